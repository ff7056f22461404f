"""Plan, step, and execution result models.

A ``Plan`` is the compiler's output: an ordered list of ``Step`` records, each
tagged with an action name from :class:`ActionTag` and carrying an
action-specific ``params`` mapping. The executor validates ``params`` into the
matching model from :data:`PARAMS_BY_ACTION` right before dispatch.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, ConfigDict, Field
from pydantic.alias_generators import to_camel

from xlplan.contracts.common import WarningDetail
from xlplan.contracts.schema import CamelModel


class ActionTag(str, Enum):
    CONVERT_DATATYPE = "CONVERT_DATATYPE"
    ADD_FORMULA = "ADD_FORMULA"
    CREATE_CHART = "CREATE_CHART"
    SORT_DATA = "SORT_DATA"
    FILTER_DATA = "FILTER_DATA"
    ADD_COLUMN = "ADD_COLUMN"
    DELETE_COLUMN = "DELETE_COLUMN"
    DELETE_ROWS = "DELETE_ROWS"
    FORMAT_CELLS = "FORMAT_CELLS"
    CLEAN_DATA = "CLEAN_DATA"
    AGGREGATE = "AGGREGATE"
    YOY_CALCULATION = "YOY_CALCULATION"
    QUERY_VALUE = "QUERY_VALUE"


class CriterionClause(CamelModel):
    """One column/operator/value condition of a multi-criteria formula."""

    column: str | None = Field(
        default=None, validation_alias=AliasChoices("column", "criteria_column", "criteriaColumn"),
    )
    operator: str = "equals"
    value: Any = None


class Step(CamelModel):
    """A single typed step of a plan. Immutable once emitted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    step_number: int
    action: str
    description: str = ""
    params: dict[str, Any] = Field(default_factory=dict)


class Plan(CamelModel):
    """Compiled plan: summary plus ordered steps."""

    summary: str = ""
    steps: list[Step] = Field(default_factory=list)


class StepResult(CamelModel):
    """Outcome of one executed step."""

    step: int | None = None
    action: str | None = None
    description: str = ""
    status: Literal["success", "error"]
    result: Any = None
    error: str | None = None


class ExecutionResult(CamelModel):
    """Outcome of executing a whole plan. Never persisted between requests."""

    summary: str = ""
    step_results: list[StepResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.status == "success" for r in self.step_results)


class PlanResponse(CamelModel):
    """User-facing response for one planning request."""

    success: bool
    answer: str = ""
    intent: str | None = None
    plan: Plan = Field(default_factory=Plan)
    warnings: list[WarningDetail] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Per-action parameter records
# ---------------------------------------------------------------------------
class ConvertDatatypeParams(CamelModel):
    column: str
    target_type: str = Field(
        default="number", validation_alias=AliasChoices("targetType", "target_type", "type"),
    )


class AddFormulaParams(CamelModel):
    column: str
    formula: str
    column_name: str | None = None


class CreateChartParams(CamelModel):
    chart_type: str = "column"
    title: str = ""
    x_axis_column: str | None = None
    series_columns: list[str] = Field(default_factory=list)
    styling: dict[str, Any] = Field(default_factory=dict)


class SortDataParams(CamelModel):
    column: str
    order: str = "asc"


class FilterDataParams(CamelModel):
    column: str
    operator: str = "equals"
    value: Any = None


class AddColumnParams(CamelModel):
    column_name: str = "New Column"
    formula: str | None = None
    value: Any = None
    position: str | None = None


class DeleteColumnParams(CamelModel):
    column: str | None = None
    columns: list[str] = Field(default_factory=list)


class DeleteRowsParams(CamelModel):
    rows: list[int] = Field(default_factory=list)
    column: str | None = None
    operator: str | None = None
    value: Any = None


class FormatCellsParams(CamelModel):
    column: str | None = None
    range: str | None = None
    format: str = "number"
    decimals: int = 2


class CleanDataParams(CamelModel):
    operation: str
    column: str | None = None
    fill_value: Any = Field(
        default=None, validation_alias=AliasChoices("fillValue", "fill_value", "value"),
    )


class AggregateParams(CamelModel):
    column: str
    function: str = "sum"
    label: str | None = None


class YoyCalculationParams(CamelModel):
    column: str
    column_name: str | None = None


class QueryValueParams(CamelModel):
    formula: str
    label: str = "Result"


PARAMS_BY_ACTION: dict[ActionTag, type[CamelModel]] = {
    ActionTag.CONVERT_DATATYPE: ConvertDatatypeParams,
    ActionTag.ADD_FORMULA: AddFormulaParams,
    ActionTag.CREATE_CHART: CreateChartParams,
    ActionTag.SORT_DATA: SortDataParams,
    ActionTag.FILTER_DATA: FilterDataParams,
    ActionTag.ADD_COLUMN: AddColumnParams,
    ActionTag.DELETE_COLUMN: DeleteColumnParams,
    ActionTag.DELETE_ROWS: DeleteRowsParams,
    ActionTag.FORMAT_CELLS: FormatCellsParams,
    ActionTag.CLEAN_DATA: CleanDataParams,
    ActionTag.AGGREGATE: AggregateParams,
    ActionTag.YOY_CALCULATION: YoyCalculationParams,
    ActionTag.QUERY_VALUE: QueryValueParams,
}


class ValidationResult(CamelModel):
    """Result of checking a plan before execution."""

    valid: bool = True
    checks: list[dict[str, Any]] = Field(default_factory=list)
