"""Deterministic formula templates, one per calculation pattern."""

from __future__ import annotations

from typing import Any, Callable, Mapping

from xlplan.contracts.common import FormulaBuildError
from xlplan.engine.operators import to_sheet_operator


def _criterion(operator: str | None, value: Any) -> str:
    """Render one criterion argument: quoted when the value is text."""
    if value is None:
        raise FormulaBuildError("Criterion value is missing")
    sheet_op = to_sheet_operator(operator)
    text = value if sheet_op == "=" else f"{sheet_op}{value}"
    if isinstance(value, str):
        return f'"{text}"'
    return str(text)


def _whole(column: str) -> str:
    return f"{column}:{column}"


def _require(params: Mapping[str, Any], *names: str) -> list[Any]:
    values = []
    for name in names:
        value = params.get(name)
        if value is None or value == "":
            raise FormulaBuildError(f"Missing parameter '{name}'")
        values.append(value)
    return values


def _clauses(params: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    criteria = params.get("criteria")
    if not isinstance(criteria, list) or not criteria:
        raise FormulaBuildError("Parameter 'criteria' must be a non-empty list of clauses")
    clauses = []
    for idx, clause in enumerate(criteria):
        if hasattr(clause, "model_dump"):
            clause = clause.model_dump()
        if not isinstance(clause, Mapping) or not clause.get("column"):
            raise FormulaBuildError(f"Criterion {idx + 1} has no column")
        clauses.append(clause)
    return clauses


def build_sum(params: Mapping[str, Any]) -> str:
    (column,) = _require(params, "column")
    return f"=SUM({_whole(column)})"


def build_average(params: Mapping[str, Any]) -> str:
    column = params.get("column") or params.get("average_column")
    if not column:
        raise FormulaBuildError("Missing parameter 'column'")
    return f"=AVERAGE({_whole(column)})"


def build_count(params: Mapping[str, Any]) -> str:
    # COUNTA counts text and numbers alike
    (column,) = _require(params, "column")
    return f"=COUNTA({_whole(column)})"


def build_count_if(params: Mapping[str, Any]) -> str:
    (column,) = _require(params, "criteria_column")
    crit = _criterion(params.get("operator"), params.get("value"))
    return f"=COUNTIF({_whole(column)}, {crit})"


def build_count_ifs(params: Mapping[str, Any]) -> str:
    parts = [
        f"{_whole(c['column'])}, {_criterion(c.get('operator'), c.get('value'))}"
        for c in _clauses(params)
    ]
    return f"=COUNTIFS({', '.join(parts)})"


def build_sum_if(params: Mapping[str, Any]) -> str:
    sum_column, criteria_column = _require(params, "sum_column", "criteria_column")
    crit = _criterion(params.get("operator"), params.get("value"))
    return f"=SUMIF({_whole(criteria_column)}, {crit}, {_whole(sum_column)})"


def build_sum_ifs(params: Mapping[str, Any]) -> str:
    (sum_column,) = _require(params, "sum_column")
    formula = f"=SUMIFS({_whole(sum_column)}"
    for c in _clauses(params):
        formula += f", {_whole(c['column'])}, {_criterion(c.get('operator'), c.get('value'))}"
    return formula + ")"


def build_percent_growth(params: Mapping[str, Any]) -> str:
    current, previous = _require(params, "current_cell", "previous_cell")
    return f"=({current}-{previous})/{previous}"


def build_running_total(params: Mapping[str, Any]) -> str:
    column, start_row = _require(params, "column", "start_row")
    return f"=SUM({column}${start_row}:{column}{start_row})"


def build_row_calc(params: Mapping[str, Any]) -> str:
    (formula,) = _require(params, "formula")
    return formula


BUILDERS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    "build_sum": build_sum,
    "build_average": build_average,
    "build_count": build_count,
    "build_count_if": build_count_if,
    "build_count_ifs": build_count_ifs,
    "build_sum_if": build_sum_if,
    "build_sum_ifs": build_sum_ifs,
    "build_percent_growth": build_percent_growth,
    "build_running_total": build_running_total,
    "build_row_calc": build_row_calc,
}


def build_formula(builder_name: str, params: Mapping[str, Any]) -> str:
    builder = BUILDERS.get(builder_name)
    if builder is None:
        raise FormulaBuildError(f"Unknown formula builder: {builder_name}")
    return builder(params)


def wrap_formula(formula: Any, rules: Mapping[str, Any] | None) -> Any:
    """Guard a formula with IFERROR when the rules ask for it."""
    if rules and rules.get("wrap_with_iferror"):
        if isinstance(formula, str) and formula.startswith("="):
            return f'=IFERROR({formula[1:]}, "")'
    return formula
