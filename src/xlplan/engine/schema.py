"""Sheet schema extraction: headers, detected column types, samples."""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime
from typing import Any

from xlplan.adapters.base import TabularStore
from xlplan.contracts.schema import Header, SheetSchema
from xlplan.engine.layout import DEFAULT_HEADER_SCAN_ROWS, detect_layout, last_data_row, read_headers

SAMPLE_ROWS = 5
TOP_VALUES = 5


def _cell_type(value: Any) -> str | None:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, str) and value.startswith("="):
        return "formula"
    return "text"


def _detect_type(values: list[Any]) -> str:
    counts = Counter(t for t in (_cell_type(v) for v in values) if t is not None)
    if not counts:
        return "empty"
    kind, _ = counts.most_common(1)[0]
    return kind


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def extract_schema(
    store: TabularStore,
    sheet_name: str = "",
    *,
    scan_rows: int = DEFAULT_HEADER_SCAN_ROWS,
) -> SheetSchema:
    """Describe a sheet for the planner. Built fresh on every request."""
    layout = detect_layout(store, scan_rows)
    last_row = last_data_row(store, layout)
    width = store.max_column
    rows = store.read_range(layout.data_start, 1, last_row, width) if width else []

    headers: list[Header] = []
    for header in read_headers(store, layout):
        column = [row[header.index - 1] for row in rows]
        detected = _detect_type(column)
        update: dict[str, Any] = {"detected_type": detected}
        if detected == "text":
            counter = Counter(str(v).strip() for v in column if _cell_type(v) == "text")
            update["top_values"] = [v for v, _ in counter.most_common(TOP_VALUES)]
        elif detected == "number":
            numbers = [float(v) for v in column if _cell_type(v) == "number"]
            update["min_max"] = (min(numbers), max(numbers))
        headers.append(header.model_copy(update=update))

    return SheetSchema(
        sheet_name=sheet_name,
        headers=headers,
        sample_data=[[_json_safe(v) for v in row] for row in rows[:SAMPLE_ROWS]],
        row_count=len(rows),
        col_count=width,
        header_row_number=layout.header_row,
    )
