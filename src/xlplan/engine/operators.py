"""Comparison operator vocabulary shared by formulas and row filters."""

from __future__ import annotations

from typing import Any

# Synonym -> spreadsheet comparison token. Unknown operators pass through.
SHEET_OPERATORS: dict[str, str] = {
    "equals": "=",
    "equal_to": "=",
    "is": "=",
    "==": "=",
    "=": "=",
    "not_equals": "<>",
    "not_equal": "<>",
    "not_equal_to": "<>",
    "is_not": "<>",
    "!=": "<>",
    "<>": "<>",
    "greater": ">",
    "greater_than": ">",
    ">": ">",
    "less": "<",
    "less_than": "<",
    "<": "<",
}

# Synonym -> canonical filter operator name.
FILTER_OPERATORS: dict[str, str] = {
    "equal_to": "equals",
    "is": "equals",
    "==": "equals",
    "=": "equals",
    "not_equal_to": "not_equals",
    "not_equal": "not_equals",
    "is_not": "not_equals",
    "!=": "not_equals",
    "<>": "not_equals",
    "greater_than": "greater",
    ">": "greater",
    "less_than": "less",
    "<": "less",
    "greater_than_or_equal": "greater_equal",
    ">=": "greater_equal",
    "less_than_or_equal": "less_equal",
    "<=": "less_equal",
    "empty": "is_empty",
    "blank": "is_empty",
    "not_empty": "is_not_empty",
    "not_blank": "is_not_empty",
}


def to_sheet_operator(op: str | None) -> str:
    """Normalize *op* to one of ``=``, ``<>``, ``>``, ``<``; pass unknowns through."""
    if not op:
        return "="
    return SHEET_OPERATORS.get(op.lower(), op)


def canonical_filter_operator(op: str | None) -> str | None:
    if op is None:
        return None
    return FILTER_OPERATORS.get(str(op).lower(), op)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip().casefold()


def matches(cell: Any, operator: str | None, value: Any) -> bool:
    """Evaluate ``cell <operator> value`` with lenient number/text coercion."""
    op = canonical_filter_operator(operator) or "equals"
    if op == "is_empty":
        return _as_text(cell) == ""
    if op == "is_not_empty":
        return _as_text(cell) != ""
    if op in ("contains", "not_contains"):
        found = _as_text(value) in _as_text(cell)
        return found if op == "contains" else not found

    left, right = _as_number(cell), _as_number(value)
    if op in ("equals", "not_equals"):
        if left is not None and right is not None:
            equal = left == right
        else:
            equal = _as_text(cell) == _as_text(value)
        return equal if op == "equals" else not equal

    if left is None or right is None:
        return False
    if op == "greater":
        return left > right
    if op == "less":
        return left < right
    if op == "greater_equal":
        return left >= right
    if op == "less_equal":
        return left <= right
    raise ValueError(f"Unsupported comparison operator: {operator}")
