"""Column resolution: header name or column letter -> canonical column letter."""

from __future__ import annotations

import re
from typing import Any, Iterable

_LETTER_RE = re.compile(r"^[A-Za-z]{1,2}$")


def _header_name(header: Any) -> str | None:
    if isinstance(header, dict):
        return header.get("name")
    return getattr(header, "name", None)


def _header_letter(header: Any) -> str | None:
    if isinstance(header, dict):
        return header.get("columnLetter") or header.get("column_letter") or header.get("column")
    return getattr(header, "column_letter", None)


def is_column_letter(identifier: Any) -> bool:
    return isinstance(identifier, str) and bool(_LETTER_RE.match(identifier.strip()))


def resolve_column(identifier: Any, headers: Iterable[Any] | None) -> Any:
    """Map *identifier* to a column letter.

    Letter-shaped identifiers (one or two letters) are always taken as column
    letters, even when a header carries the same text. Other strings are
    matched case-insensitively against header names. Anything unresolved is
    returned as given; the executor reports the missing column.
    """
    if identifier is None or identifier == "":
        return identifier
    text = str(identifier).strip()
    if _LETTER_RE.match(text):
        return text.upper()
    folded = text.casefold()
    for header in headers or ():
        name = _header_name(header)
        if name is not None and str(name).strip().casefold() == folded:
            return _header_letter(header)
    return text
