"""Header-row detection and header lookup on a tabular store."""

from __future__ import annotations

from typing import Any

from openpyxl.utils import column_index_from_string, get_column_letter
from pydantic import BaseModel

from xlplan.adapters.base import TabularStore
from xlplan.contracts.common import ColumnNotFoundError
from xlplan.contracts.schema import Header
from xlplan.engine.resolver import is_column_letter, resolve_column

DEFAULT_HEADER_SCAN_ROWS = 10


class SheetLayout(BaseModel):
    """Where the header sits and where data begins. Computed once per execution."""

    model_config = {"frozen": True}

    header_row: int = 1

    @property
    def data_start(self) -> int:
        return self.header_row + 1


def _is_label(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def detect_layout(store: TabularStore, scan_rows: int = DEFAULT_HEADER_SCAN_ROWS) -> SheetLayout:
    """Pick the row with the most non-empty text cells among the first *scan_rows*.

    Ties go to the earliest row. With no text anywhere the header is row 1.
    """
    last_row = min(store.max_row, max(scan_rows, 1))
    width = store.max_column
    best_row, best_count = 1, 0
    if last_row and width:
        for offset, values in enumerate(store.read_range(1, 1, last_row, width)):
            count = sum(1 for v in values if _is_label(v))
            if count > best_count:
                best_row, best_count = offset + 1, count
    return SheetLayout(header_row=best_row)


def read_headers(store: TabularStore, layout: SheetLayout) -> list[Header]:
    """Headers of the detected header row, blanks skipped."""
    width = store.max_column
    if not width:
        return []
    values = store.read_range(layout.header_row, 1, layout.header_row, width)[0]
    headers: list[Header] = []
    for idx, value in enumerate(values, start=1):
        if value is None or str(value).strip() == "":
            continue
        headers.append(Header(name=str(value).strip(), column_letter=get_column_letter(idx), index=idx))
    return headers


def last_data_row(store: TabularStore, layout: SheetLayout) -> int:
    """Last row holding data, never above the header row."""
    return max(store.max_row, layout.header_row)


def column_index(identifier: Any, store: TabularStore, layout: SheetLayout) -> int:
    """Resolve a header name or letter to a 1-based column index on the live sheet.

    Raises ColumnNotFoundError when the identifier is neither a letter nor a
    current header.
    """
    if identifier is None or str(identifier).strip() == "":
        raise ColumnNotFoundError("No column given")
    resolved = resolve_column(identifier, read_headers(store, layout))
    if resolved and is_column_letter(resolved):
        return column_index_from_string(str(resolved).upper())
    raise ColumnNotFoundError(f"Column not found: {identifier}")
