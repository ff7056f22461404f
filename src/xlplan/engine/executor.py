"""Step executor: applies a compiled plan to a tabular store, step by step.

Every step is normalized once, validated into its per-action params model and
dispatched through a single table. A failing step is recorded as an error and
execution moves on to the next one. Row deletions always run from the highest
row number down so earlier deletions never renumber rows still pending.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from openpyxl.utils import column_index_from_string, get_column_letter

from xlplan.adapters.base import TabularStore
from xlplan.adapters.openpyxl_store import parse_ref
from xlplan.contracts.plans import (
    PARAMS_BY_ACTION,
    ActionTag,
    AddColumnParams,
    AddFormulaParams,
    AggregateParams,
    CleanDataParams,
    ConvertDatatypeParams,
    CreateChartParams,
    DeleteColumnParams,
    DeleteRowsParams,
    ExecutionResult,
    FilterDataParams,
    FormatCellsParams,
    Plan,
    QueryValueParams,
    SortDataParams,
    Step,
    StepResult,
    YoyCalculationParams,
)
from xlplan.contracts.schema import Header
from xlplan.engine.layout import SheetLayout, column_index, detect_layout, last_data_row, read_headers
from xlplan.engine.operators import matches
from xlplan.engine.resolver import is_column_letter, resolve_column
from xlplan.observe.events import EventEmitter, Timer, TraceRecorder
from xlplan.skills.registry import SkillRegistry
from xlplan.validation.policy import FilterMode, Policy

BOOKKEEPING_KEYS = ("stepNumber", "step_number", "step", "description")

SCRATCH_COLUMN_OFFSET = 100

_AGGREGATE_FUNCTIONS = {
    "sum": "SUM",
    "average": "AVERAGE",
    "avg": "AVERAGE",
    "mean": "AVERAGE",
    "count": "COUNT",
    "min": "MIN",
    "max": "MAX",
}

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d.%m.%Y", "%Y/%m/%d")
_TRUE_WORDS = frozenset({"true", "yes", "y", "1"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0"})

# Same shape as the relative-fill reference pattern: $-absolute axes are kept.
_CELL_REF_RE = re.compile(
    r"(?<![A-Za-z0-9_])(\$?)([A-Z]{1,3})(\$?)(\d+)(?![A-Za-z0-9_(])"
)
_COLUMN_RANGE_RE = re.compile(
    r"(?<![A-Za-z0-9_$:])(\$?)([A-Z]{1,3}):(\$?)([A-Z]{1,3})(?![A-Za-z0-9_(:])"
)
_PLACEHOLDER_RE = re.compile(r"\[(?!@)([^\[\]]+)\]")


# ---------------------------------------------------------------------------
# Step normalization
# ---------------------------------------------------------------------------
def normalize_step(raw: Any, position: int) -> Step:
    """Turn one raw step into a canonical ``Step``.

    Accepts ``Step`` models and dicts in wire or snake_case form. A dict with
    neither ``action`` nor ``params`` is read as ``{<ACTION>: <params>}`` using
    its first key that is not step bookkeeping.
    """
    if isinstance(raw, Step):
        return raw
    if not isinstance(raw, Mapping):
        raise ValueError(f"Step {position} is not an object")

    number = position
    for key in ("stepNumber", "step_number", "step"):
        if isinstance(raw.get(key), int) and not isinstance(raw.get(key), bool):
            number = raw[key]
            break
    description = str(raw.get("description") or "")

    if "action" in raw or "params" in raw:
        action = raw.get("action")
        params = raw.get("params") or {}
    else:
        action = next((k for k in raw if k not in BOOKKEEPING_KEYS), None)
        params = raw.get(action) if action is not None else {}
        if not isinstance(params, Mapping):
            params = {"value": params}

    if not action:
        raise ValueError(f"Step {position} has no action")
    if not isinstance(params, Mapping):
        raise ValueError(f"Step {position} params must be an object")
    return Step(step_number=number, action=str(action).upper(), description=description, params=dict(params))


# ---------------------------------------------------------------------------
# Formula templating
# ---------------------------------------------------------------------------
def _base_row(formula: str) -> str | None:
    """Digits of the first relative cell reference outside string literals."""
    for segment in formula.split('"')[::2]:
        for m in _CELL_REF_RE.finditer(_PLACEHOLDER_RE.sub("", segment)):
            if m.group(3) != "$":
                return m.group(4)
    return None


def template_formula(formula: str, headers: list[Header], row: int) -> str:
    """Produce the formula for *row* from a formula anchored to one base row.

    ``[Header]`` placeholders become ``<letter><row>`` first. Then references
    whose row equals the base row digits exactly are moved to *row*; other
    numbers, absolute rows and string literals are left alone.
    """
    base = _base_row(formula)

    def _placeholder(m: re.Match) -> str:
        letter = resolve_column(m.group(1), headers)
        if is_column_letter(letter):
            return f"{letter}{row}"
        return m.group(0)

    def _rebase(m: re.Match) -> str:
        col_abs, letters, row_abs, digits = m.groups()
        if row_abs == "$" or digits != base:
            return m.group(0)
        return f"{col_abs}{letters}{row}"

    parts = formula.split('"')
    for i in range(0, len(parts), 2):
        segment = _PLACEHOLDER_RE.sub(_placeholder, parts[i])
        if base is not None:
            segment = _CELL_REF_RE.sub(_rebase, segment)
        parts[i] = segment
    return '"'.join(parts)


def _moved_column(letters: str, col_from: int, col_delta: int) -> str | None:
    """New letters for a column after a structural edit; None when it was deleted."""
    idx = column_index_from_string(letters)
    if idx < col_from:
        return letters
    if col_delta < 0 and idx < col_from - col_delta:
        return None
    return get_column_letter(idx + col_delta)


def shift_formula(formula: str, *, row_delta: int = 0, col_from: int = 0, col_delta: int = 0) -> str:
    """Move a formula's references the way a structural edit moved the cells.

    Relative rows move by *row_delta* ($-rows stay put). With *col_delta*,
    references at or right of column *col_from* move, absolute or not, and a
    reference into a deleted column becomes ``#REF!``.
    """

    def _cell(m: re.Match) -> str:
        col_abs, letters, row_abs, digits = m.groups()
        if col_delta and col_from:
            letters = _moved_column(letters, col_from, col_delta)
            if letters is None:
                return "#REF!"
        if row_delta and row_abs != "$":
            digits = str(max(int(digits) + row_delta, 1))
        return f"{col_abs}{letters}{row_abs}{digits}"

    def _columns(m: re.Match) -> str:
        first_abs, first, last_abs, last = m.groups()
        first, last = _moved_column(first, col_from, col_delta), _moved_column(last, col_from, col_delta)
        if first is None or last is None:
            return "#REF!"
        return f"{first_abs}{first}:{last_abs}{last}"

    parts = formula.split('"')
    for i in range(0, len(parts), 2):
        segment = _CELL_REF_RE.sub(_cell, parts[i])
        if col_delta and col_from:
            segment = _COLUMN_RANGE_RE.sub(_columns, segment)
        parts[i] = segment
    return '"'.join(parts)


def format_query_value(value: Any) -> str:
    """Render a computed value: thousands separators above 1000, else up to two decimals."""
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return str(value)
    if value == 0:
        return "0"
    text = f"{value:,.2f}" if abs(value) > 1000 else f"{value:.2f}"
    return text.rstrip("0").rstrip(".")


def _number_format(style: str, decimals: int) -> str:
    places = f".{'0' * decimals}" if decimals > 0 else ""
    fmt_map = {
        "number": f"#,##0{places}",
        "percent": f"0{places}%",
        "currency": f"$#,##0{places}",
        "date": "YYYY-MM-DD",
        "text": "@",
    }
    return fmt_map.get(style, style)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _is_formula(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("=")


def _coerce_number(value: Any) -> tuple[bool, Any]:
    if isinstance(value, bool):
        return False, value
    if isinstance(value, (int, float)):
        return True, value
    text = str(value).strip().replace(",", "")
    for symbol in ("$", "€", "£"):
        text = text.replace(symbol, "")
    try:
        number = float(text)
    except ValueError:
        return False, value
    return True, int(number) if number.is_integer() else number


def _coerce(value: Any, target: str) -> tuple[bool, Any]:
    if target == "number":
        return _coerce_number(value)
    if target == "text":
        return True, value if isinstance(value, str) else str(value)
    if target == "date":
        if isinstance(value, datetime):
            return True, value
        text = str(value).strip()
        try:
            return True, datetime.fromisoformat(text)
        except ValueError:
            pass
        for fmt in _DATE_FORMATS:
            try:
                return True, datetime.strptime(text, fmt)
            except ValueError:
                continue
        return False, value
    if target == "boolean":
        if isinstance(value, bool):
            return True, value
        word = str(value).strip().lower()
        if word in _TRUE_WORDS:
            return True, True
        if word in _FALSE_WORDS:
            return True, False
        return False, value
    raise ValueError(f"Unknown target type '{target}'. Valid: boolean, date, number, text")


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, float(value))
    if isinstance(value, datetime):
        return (1, value.timestamp())
    return (2, str(value).strip().casefold())


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------
class StepExecutor:
    """Executes plans against one store; a new ``ExecutionResult`` per call."""

    def __init__(
        self,
        store: TabularStore,
        registry: SkillRegistry,
        policy: Policy | None = None,
        *,
        emitter: EventEmitter | None = None,
        trace: TraceRecorder | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.policy = policy or Policy()
        self.emitter = emitter or EventEmitter()
        self.trace = trace
        self._data_end: int | None = None
        self._handlers: dict[ActionTag, Callable[[Any, SheetLayout], str]] = {
            ActionTag.CONVERT_DATATYPE: self._convert_datatype,
            ActionTag.ADD_FORMULA: self._add_formula,
            ActionTag.CREATE_CHART: self._create_chart,
            ActionTag.SORT_DATA: self._sort_data,
            ActionTag.FILTER_DATA: self._filter_data,
            ActionTag.ADD_COLUMN: self._add_column,
            ActionTag.DELETE_COLUMN: self._delete_column,
            ActionTag.DELETE_ROWS: self._delete_rows,
            ActionTag.FORMAT_CELLS: self._format_cells,
            ActionTag.CLEAN_DATA: self._clean_data,
            ActionTag.AGGREGATE: self._aggregate,
            ActionTag.YOY_CALCULATION: self._yoy_calculation,
            ActionTag.QUERY_VALUE: self._query_value,
        }

    def execute(self, plan: Plan | Mapping[str, Any]) -> ExecutionResult:
        """Run every step in order. Step failures never stop the plan."""
        if isinstance(plan, Plan):
            summary, raw_steps = plan.summary, list(plan.steps)
        else:
            summary = str(plan.get("summary") or "")
            raw_steps = plan.get("steps") or []
            if not isinstance(raw_steps, list):
                raise ValueError("Plan 'steps' must be a list")

        layout = detect_layout(self.store, self.policy.header_scan_rows)
        self._data_end = None
        results: list[StepResult] = []

        for position, raw in enumerate(raw_steps, start=1):
            try:
                step = normalize_step(raw, position)
            except ValueError as e:
                description = raw.get("description", "") if isinstance(raw, Mapping) else ""
                results.append(StepResult(step=position, description=str(description), status="error", error=str(e)))
                continue

            self.emitter.emit("step.start", {"step": step.step_number, "action": step.action})
            with Timer() as timer:
                try:
                    outcome = self.run_step(step, layout)
                    result = StepResult(
                        step=step.step_number, action=step.action, description=step.description,
                        status="success", result=outcome,
                    )
                except Exception as e:
                    result = StepResult(
                        step=step.step_number, action=step.action, description=step.description,
                        status="error", error=str(e) or type(e).__name__,
                    )
            results.append(result)
            self.emitter.emit("step.end", {
                "step": step.step_number, "action": step.action, "status": result.status,
                "duration_ms": timer.elapsed_ms,
            })
            if self.trace is not None:
                self.trace.record("step", {
                    "step": step.step_number, "action": step.action, "status": result.status,
                    "duration_ms": timer.elapsed_ms,
                })

        return ExecutionResult(summary=summary, step_results=results)

    def run_step(self, step: Step, layout: SheetLayout) -> str:
        """Validate one step's params and run its handler."""
        try:
            tag = ActionTag(step.action.upper())
        except ValueError:
            raise ValueError(f"Unknown action: {step.action}") from None
        params = PARAMS_BY_ACTION[tag].model_validate(step.params)
        return self._handlers[tag](params, layout)

    # -- shared helpers -----------------------------------------------------------
    def _col(self, identifier: Any, layout: SheetLayout) -> int:
        return column_index(identifier, self.store, layout)

    def _data_rows(self, layout: SheetLayout) -> range:
        """Data rows, excluding summary rows written below them by AGGREGATE."""
        if self._data_end is None:
            return range(layout.data_start, last_data_row(self.store, layout) + 1)
        return range(layout.data_start, max(self._data_end, layout.header_row) + 1)

    def _column_values(self, col: int, layout: SheetLayout) -> list[tuple[int, Any]]:
        rows = self._data_rows(layout)
        if not rows:
            return []
        values = self.store.read_range(rows.start, col, rows.stop - 1, col)
        return [(row, cells[0]) for row, cells in zip(rows, values)]

    def _remove_rows(self, rows: Iterable[int], layout: SheetLayout) -> str:
        """Delete *rows* highest first and report the impact."""
        total = len(self._data_rows(layout))
        doomed = sorted(set(rows), reverse=True)
        for row in doomed:
            self.store.delete_row(row)
        if self._data_end is not None:
            self._data_end -= len(doomed)
        ratio = len(doomed) / total if total else 0.0
        message = f"Deleted {len(doomed)} of {total} rows ({ratio:.0%})."
        if doomed and ratio >= self.registry.high_impact_ratio:
            message += " Warning: high-impact operation removed most of the data."
        return message

    def _shift_formula_columns(self, col_from: int, col_delta: int) -> None:
        """Rewrite every formula on the sheet after columns moved at *col_from*."""
        height, width = self.store.max_row, self.store.max_column
        for row, values in enumerate(self.store.read_range(1, 1, height, width), start=1):
            for col, value in enumerate(values, start=1):
                if _is_formula(value):
                    shifted = shift_formula(value, col_from=col_from, col_delta=col_delta)
                    if shifted != value:
                        self.store.set_formula(row, col, shifted)

    def _fill_column(
        self,
        col: int,
        layout: SheetLayout,
        *,
        formula: str | None,
        value: Any,
        headers: list[Header],
        rows: range,
    ) -> int:
        filled = 0
        for row in rows:
            if formula:
                self.store.set_formula(row, col, template_formula(formula, headers, row))
            else:
                self.store.set_value(row, col, value)
            filled += 1
        return filled

    # -- handlers --------------------------------------------------------------
    def _convert_datatype(self, params: ConvertDatatypeParams, layout: SheetLayout) -> str:
        col = self._col(params.column, layout)
        target = params.target_type.lower()
        converted = failed = 0
        for row, value in self._column_values(col, layout):
            if _is_blank(value) or _is_formula(value):
                continue
            ok, new_value = _coerce(value, target)
            if not ok:
                failed += 1
                continue
            if new_value != value or type(new_value) is not type(value):
                self.store.set_value(row, col, new_value)
            converted += 1
        message = f"Converted {converted} cells in column {get_column_letter(col)} to {target}."
        if failed:
            message += f" {failed} cells could not be converted and were left unchanged."
        return message

    def _add_formula(self, params: AddFormulaParams, layout: SheetLayout) -> str:
        col = self._col(params.column, layout)
        headers = read_headers(self.store, layout)
        if params.column_name:
            self.store.set_value(layout.header_row, col, params.column_name)
        filled = self._fill_column(
            col, layout, formula=params.formula, value=None, headers=headers, rows=self._data_rows(layout),
        )
        return f"Filled formula into {filled} rows of column {get_column_letter(col)}."

    def _create_chart(self, params: CreateChartParams, layout: SheetLayout) -> str:
        chart_type = (params.chart_type or "").lower()
        if chart_type not in self.registry.chart_supported_types:
            chart_type = self.registry.chart_default_type
        category = self._col(params.x_axis_column, layout) if params.x_axis_column else None
        series = [self._col(c, layout) for c in params.series_columns]
        styling = {**self.registry.chart_styling, **params.styling}
        anchor = self.store.add_chart(
            chart_type,
            category_col=category,
            series_cols=series,
            header_row=layout.header_row,
            last_row=self._data_rows(layout).stop - 1,
            title=params.title,
            styling=styling,
        )
        return f"Created {chart_type} chart at {anchor}."

    def _sort_data(self, params: SortDataParams, layout: SheetLayout) -> str:
        col = self._col(params.column, layout)
        order = params.order.lower()
        if order not in ("asc", "ascending", "desc", "descending"):
            raise ValueError(f"Unknown sort order '{params.order}'. Valid: asc, desc")
        rows = self._data_rows(layout)
        width = self.store.max_column
        if not rows or not width:
            return "No data rows to sort."

        data = list(zip(rows, self.store.read_range(rows.start, 1, rows.stop - 1, width)))
        filled = [item for item in data if not _is_blank(item[1][col - 1])]
        blanks = [item for item in data if _is_blank(item[1][col - 1])]
        filled.sort(key=lambda item: _sort_key(item[1][col - 1]), reverse=order.startswith("desc"))
        moved = []
        for dst, (src, values) in enumerate(filled + blanks, start=rows.start):
            moved.append([
                shift_formula(v, row_delta=dst - src) if _is_formula(v) and dst != src else v
                for v in values
            ])
        self.store.write_range(rows.start, 1, moved)
        return f"Sorted {len(data)} rows by column {get_column_letter(col)} ({'descending' if order.startswith('desc') else 'ascending'})."

    def _filter_data(self, params: FilterDataParams, layout: SheetLayout) -> str:
        col = self._col(params.column, layout)
        matched, kept = [], []
        for row, value in self._column_values(col, layout):
            (matched if matches(value, params.operator, params.value) else kept).append(row)
        if self.policy.filter_mode == FilterMode.KEEP_MATCHING:
            return self._remove_rows(kept, layout)
        return self._remove_rows(matched, layout)

    def _add_column(self, params: AddColumnParams, layout: SheetLayout) -> str:
        position = (params.position or "end").strip()
        width = self.store.max_column
        if position.lower() == "end":
            col = width + 1
        elif position.lower().startswith("after:"):
            col = self._col(position[6:], layout) + 1
        elif position.lower().startswith("before:"):
            col = self._col(position[7:], layout)
        else:
            col = self._col(position, layout)

        rows = self._data_rows(layout)
        if col <= width:
            self.store.insert_column(col)
            self._shift_formula_columns(col, 1)
        headers = read_headers(self.store, layout)
        self.store.set_value(layout.header_row, col, params.column_name)
        filled = 0
        if params.formula or params.value is not None:
            filled = self._fill_column(
                col, layout, formula=params.formula, value=params.value, headers=headers, rows=rows,
            )
        return f"Added column '{params.column_name}' at {get_column_letter(col)} ({filled} rows filled)."

    def _delete_column(self, params: DeleteColumnParams, layout: SheetLayout) -> str:
        names = list(params.columns)
        if params.column:
            names.insert(0, params.column)
        if not names:
            raise ValueError("DELETE_COLUMN needs 'column' or 'columns'")
        indices = sorted({self._col(n, layout) for n in names}, reverse=True)
        for idx in indices:
            self.store.delete_column(idx)
            self._shift_formula_columns(idx, -1)
        return f"Deleted columns {', '.join(get_column_letter(i) for i in indices)}."

    def _delete_rows(self, params: DeleteRowsParams, layout: SheetLayout) -> str:
        data_rows = self._data_rows(layout)
        if params.rows:
            for row in params.rows:
                if row not in data_rows:
                    raise ValueError(f"Row {row} is outside the data range {data_rows.start}-{data_rows.stop - 1}")
            return self._remove_rows(params.rows, layout)
        if params.column:
            col = self._col(params.column, layout)
            matched = [
                row for row, value in self._column_values(col, layout)
                if matches(value, params.operator, params.value)
            ]
            return self._remove_rows(matched, layout)
        raise ValueError("DELETE_ROWS needs 'rows' or a 'column' condition")

    def _format_cells(self, params: FormatCellsParams, layout: SheetLayout) -> str:
        pattern = _number_format(params.format, params.decimals)
        if params.range:
            min_row, min_col, max_row, max_col = parse_ref(params.range)
            target = params.range.upper()
        elif params.column:
            col = self._col(params.column, layout)
            rows = self._data_rows(layout)
            min_row, max_row, min_col, max_col = rows.start, rows.stop - 1, col, col
            letter = get_column_letter(col)
            target = f"{letter}{min_row}:{letter}{max_row}"
        else:
            raise ValueError("FORMAT_CELLS needs 'column' or 'range'")

        touched = 0
        for row in range(min_row, max_row + 1):
            for col in range(min_col, max_col + 1):
                self.store.set_number_format(row, col, pattern)
                touched += 1
        return f"Applied format '{pattern}' to {touched} cells in {target}."

    def _clean_data(self, params: CleanDataParams, layout: SheetLayout) -> str:
        operation = params.operation.lower()
        col = self._col(params.column, layout)
        letter = get_column_letter(col)
        cells = self._column_values(col, layout)

        if operation == "remove_duplicates":
            seen: set[str] = set()
            doomed = []
            for row, value in cells:
                if _is_blank(value):
                    continue
                key = str(value).strip().casefold()
                if key in seen:
                    doomed.append(row)
                else:
                    seen.add(key)
            return self._remove_rows(doomed, layout)

        if operation == "fill_empty":
            if params.fill_value is None:
                raise ValueError("fill_empty needs a fill value")
            blanks = [row for row, value in cells if _is_blank(value)]
            for row in blanks:
                self.store.set_value(row, col, params.fill_value)
            return f"Filled {len(blanks)} empty cells in column {letter}."

        transforms: dict[str, Callable[[Any], tuple[bool, Any]]] = {
            "trim_whitespace": lambda v: (isinstance(v, str), v.strip() if isinstance(v, str) else v),
            "convert_to_number": _coerce_number,
            "to_uppercase": lambda v: (isinstance(v, str), v.upper() if isinstance(v, str) else v),
            "to_lowercase": lambda v: (isinstance(v, str), v.lower() if isinstance(v, str) else v),
            "to_titlecase": lambda v: (isinstance(v, str), v.title() if isinstance(v, str) else v),
        }
        transform = transforms.get(operation)
        if transform is None:
            raise ValueError(f"Unsupported cleaning operation: {params.operation}")

        changed = 0
        for row, value in cells:
            if _is_blank(value) or _is_formula(value):
                continue
            ok, new_value = transform(value)
            if ok and new_value != value:
                self.store.set_value(row, col, new_value)
                changed += 1
        return f"{operation}: updated {changed} cells in column {letter}."

    def _aggregate(self, params: AggregateParams, layout: SheetLayout) -> str:
        function = _AGGREGATE_FUNCTIONS.get(params.function.lower())
        if function is None:
            raise ValueError(f"Unknown aggregate function '{params.function}'. Valid: average, count, max, min, sum")
        col = self._col(params.column, layout)
        rows = self._data_rows(layout)
        if not rows:
            raise ValueError("No data rows to aggregate")

        letter = get_column_letter(col)
        summary_row = self.store.max_row + 1
        if self._data_end is None:
            self._data_end = rows.stop - 1
        label = params.label or f"{params.function.title()} of {letter}"
        self.store.set_formula(summary_row, col, f"={function}({letter}{rows.start}:{letter}{rows.stop - 1})")
        if col > 1 and _is_blank(self.store.get_value(summary_row, 1)):
            self.store.set_value(summary_row, 1, label)
        self.store.recalculate()
        value = self.store.computed_value(summary_row, col)
        return f"{label}: {format_query_value(value)}"

    def _yoy_calculation(self, params: YoyCalculationParams, layout: SheetLayout) -> str:
        col = self._col(params.column, layout)
        letter = get_column_letter(col)
        source_name = self.store.get_value(layout.header_row, col) or letter
        rows = self._data_rows(layout)
        target = self.store.max_column + 1
        self.store.set_value(layout.header_row, target, params.column_name or f"{source_name} YoY %")

        filled = 0
        for row in rows:
            if row == rows.start:
                continue
            self.store.set_formula(row, target, f'=IFERROR(({letter}{row}-{letter}{row - 1})/{letter}{row - 1}, "")')
            self.store.set_number_format(row, target, _number_format("percent", 2))
            filled += 1
        return f"Added growth column {get_column_letter(target)} for {source_name} ({filled} rows)."

    def _query_value(self, params: QueryValueParams, layout: SheetLayout) -> str:
        row = layout.header_row
        col = self.store.max_column + SCRATCH_COLUMN_OFFSET
        self.store.set_formula(row, col, params.formula)
        try:
            self.store.recalculate()
            value = self.store.computed_value(row, col)
        finally:
            self.store.set_value(row, col, None)
        if value is None:
            raise ValueError(f"Could not evaluate formula {params.formula}")
        return f"{params.label}: {format_query_value(value)}"
