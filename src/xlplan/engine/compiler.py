"""Plan compiler: classified intent + raw planner output -> validated Plan.

Each intent has its own branch. Problems with a single calculation or
operation (unknown pattern, unsupported operation, missing parameter) skip
that item with a warning; structural problems (operations not a list, a
formula template that cannot be filled) raise ``PlanCompilationError`` and
abort the whole plan.
"""

from __future__ import annotations

from typing import Any, Mapping

from xlplan.contracts.common import PlanCompilationError, WarningDetail
from xlplan.contracts.plans import ActionTag, CriterionClause, Plan, PlanResponse, Step
from xlplan.contracts.schema import Intent, IntentResult, SheetSchema
from xlplan.engine.formulas import build_formula, wrap_formula
from xlplan.engine.operators import canonical_filter_operator
from xlplan.engine.resolver import resolve_column
from xlplan.observe.events import EventEmitter
from xlplan.skills.registry import DEFAULT_CHART_TYPE, SkillRegistry

COLUMN_PARAMS = ("column", "sum_column", "average_column", "criteria_column")


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    """First non-empty value among snake_case / camelCase spellings of a key."""
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_criteria(criteria: Any) -> Any:
    """Turn a flat ``{column: value}`` mapping into equals-clauses, keeping key order."""
    if isinstance(criteria, Mapping):
        return [
            CriterionClause(column=str(column), operator="equals", value=value).model_dump()
            for column, value in criteria.items()
        ]
    return criteria


class PlanCompiler:
    """Compiles raw planner output into a numbered list of typed steps."""

    def __init__(
        self,
        registry: SkillRegistry,
        *,
        strict_required_params: bool = False,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.registry = registry
        self.strict_required_params = strict_required_params
        self.emitter = emitter or EventEmitter()

    def compile(
        self,
        intent_result: IntentResult,
        raw_plan: Mapping[str, Any],
        schema: SheetSchema,
        prompt: str = "",
    ) -> tuple[Plan, list[WarningDetail]]:
        """Compile *raw_plan*. Returns the plan and any skip warnings.

        Raises PlanCompilationError when the raw plan cannot be used at all.
        """
        if not isinstance(raw_plan, Mapping):
            raise PlanCompilationError("Planner output must be a JSON object")

        warnings: list[WarningDetail] = []
        headers = schema.headers
        intent = intent_result.intent

        if intent in (Intent.FORMULA, Intent.INSIGHT):
            steps = self._compile_formula(raw_plan, headers, warnings)
            summary = "Performing calculations." if intent == Intent.FORMULA else "Analyzing data with queries."
        elif intent == Intent.CHART:
            step = self._compile_chart(intent_result, raw_plan, headers, prompt)
            steps = [step]
            summary = f"Creating a {step.params['chartType']} chart."
        elif intent == Intent.CLEAN_DATA:
            steps = self._compile_clean(raw_plan, headers, warnings)
            summary = "Cleaning sheet data."
        elif intent == Intent.ORGANIZATION:
            steps = self._compile_organization(raw_plan, headers)
            summary = "Organizing sheet data."
        else:
            raise PlanCompilationError(f"Unsupported intent: {intent}")

        self.emitter.emit("plan.compiled", {
            "intent": intent.value,
            "steps": len(steps),
            "warnings": len(warnings),
        })
        return Plan(summary=summary, steps=steps), warnings

    def _skip(self, warnings: list[WarningDetail], code: str, message: str, path: str) -> None:
        warnings.append(WarningDetail(code=code, message=message, path=path))
        self.emitter.emit("plan.skipped", {"code": code, "message": message, "path": path})

    # -- formula / insight ------------------------------------------------------
    def _compile_formula(
        self,
        raw_plan: Mapping[str, Any],
        headers: list[Any],
        warnings: list[WarningDetail],
    ) -> list[Step]:
        calcs = raw_plan.get("calculations")
        if not isinstance(calcs, list):
            calcs = []
            if raw_plan.get("pattern"):
                calcs.append({
                    "pattern": raw_plan.get("pattern"),
                    "parameters": raw_plan.get("parameters") or {},
                    "label": raw_plan.get("label"),
                })

        rules = self.registry.formula_rules
        steps: list[Step] = []
        for idx, calc in enumerate(calcs):
            path = f"calculations[{idx}]"
            if not isinstance(calc, Mapping):
                self._skip(warnings, "WARN_INVALID_CALCULATION", "Calculation is not an object", path)
                continue
            pattern = calc.get("pattern")
            definition = self.registry.pattern(pattern)
            if definition is None:
                self._skip(warnings, "WARN_UNSUPPORTED_PATTERN", f"Unsupported formula pattern: {pattern}", path)
                continue

            parameters = calc.get("parameters") or {}
            if not isinstance(parameters, Mapping):
                self._skip(warnings, "WARN_INVALID_PARAMETERS", f"Parameters for {pattern} are not an object", path)
                continue
            missing = [p for p in definition.required_params if parameters.get(p) is None]
            if missing:
                message = f"Missing params for {pattern}: {', '.join(missing)}"
                if self.strict_required_params:
                    raise PlanCompilationError(message)
                self._skip(warnings, "WARN_MISSING_PARAMS", message, path)
                continue

            params = dict(parameters)
            if "criteria" in params:
                params["criteria"] = normalize_criteria(params["criteria"])
            for key in COLUMN_PARAMS:
                if params.get(key):
                    params[key] = resolve_column(params[key], headers)
            if isinstance(params.get("criteria"), list):
                params["criteria"] = [
                    {**clause, "column": resolve_column(clause.get("column") or clause.get("criteria_column"), headers)}
                    if isinstance(clause, Mapping) else clause
                    for clause in params["criteria"]
                ]

            formula = wrap_formula(build_formula(definition.builder, params), rules)
            label = calc.get("label") if isinstance(calc.get("label"), str) else None
            number = len(steps) + 1
            if definition.type == "aggregate":
                steps.append(Step(
                    step_number=number,
                    action=ActionTag.QUERY_VALUE.value,
                    description=label or f"Querying {pattern}",
                    params={"formula": formula, "label": label or pattern},
                ))
            else:
                steps.append(Step(
                    step_number=number,
                    action=ActionTag.ADD_COLUMN.value,
                    description=f"Calculating {pattern}",
                    params={"columnName": parameters.get("column_name") or label or pattern, "formula": formula},
                ))
        return steps

    # -- chart ----------------------------------------------------------------
    def _compile_chart(
        self,
        intent_result: IntentResult,
        raw_plan: Mapping[str, Any],
        headers: list[Any],
        prompt: str,
    ) -> Step:
        goal = _pick(raw_plan, "chart_goal", "chartGoal")
        chart_type = (
            intent_result.explicit_chart_type
            or _pick(raw_plan, "explicit_chart_type", "explicitChartType")
            or self.registry.chart_goal_type(goal)
            or self.registry.chart_default_type
            or DEFAULT_CHART_TYPE
        )
        chart_type = str(chart_type).lower()

        x_column = resolve_column(_pick(raw_plan, "x_column", "xColumn"), headers)
        y_raw = _pick(raw_plan, "y_columns", "yColumns")
        series = [resolve_column(col, headers) for col in y_raw] if isinstance(y_raw, list) else []

        if chart_type not in self.registry.chart_supported_types:
            chart_type = self.registry.chart_default_type
        if chart_type == "pie" and len(series) > self.registry.pie_max_slices:
            chart_type = "bar"

        return Step(
            step_number=1,
            action=ActionTag.CREATE_CHART.value,
            description=f"Creating {chart_type} chart for {goal or 'data'}",
            params={
                "chartType": chart_type,
                "title": raw_plan.get("title") or prompt,
                "xAxisColumn": x_column,
                "seriesColumns": series,
                "styling": self.registry.chart_styling,
            },
        )

    # -- clean_data -------------------------------------------------------------
    def _compile_clean(
        self,
        raw_plan: Mapping[str, Any],
        headers: list[Any],
        warnings: list[WarningDetail],
    ) -> list[Step]:
        operations = raw_plan.get("operations")
        if not isinstance(operations, list):
            raise PlanCompilationError("Invalid clean_data operations format")

        steps: list[Step] = []
        for idx, op in enumerate(operations):
            path = f"operations[{idx}]"
            name = op.get("operation") if isinstance(op, Mapping) else None
            if not self.registry.supports_clean_operation(name):
                self._skip(warnings, "WARN_UNSUPPORTED_OPERATION", f"Unsupported cleaning operation: {name}", path)
                continue

            source = op.get("parameters") if isinstance(op.get("parameters"), Mapping) else op
            operator = source.get("operator")
            if name == "filter_data":
                action = ActionTag.FILTER_DATA
                operator = canonical_filter_operator(operator)
            else:
                action = ActionTag.CLEAN_DATA

            params = {
                "column": resolve_column(source.get("column"), headers),
                "operation": name,
                "operator": operator,
                "value": source.get("value"),
                "fillValue": source.get("fillValue", source.get("fill_value")),
            }
            steps.append(Step(
                step_number=len(steps) + 1,
                action=action.value,
                description=str(op.get("description") or f"Performing {name}"),
                params={k: v for k, v in params.items() if v is not None},
            ))
        return steps

    # -- organization ------------------------------------------------------------
    def _compile_organization(self, raw_plan: Mapping[str, Any], headers: list[Any]) -> list[Step]:
        operations = raw_plan.get("operations")
        if not isinstance(operations, list):
            raise PlanCompilationError("Invalid organization operations format")

        steps: list[Step] = []
        for idx, op in enumerate(operations):
            name = op.get("operation") if isinstance(op, Mapping) else None
            if not name or not isinstance(name, str):
                raise PlanCompilationError(f"Organization operation {idx + 1} has no name")

            source = op.get("parameters") if isinstance(op.get("parameters"), Mapping) else op
            params = dict(source)
            if params.get("column"):
                params["column"] = resolve_column(params["column"], headers)
            steps.append(Step(
                step_number=len(steps) + 1,
                action=name.upper(),
                description=f"Performing {name}",
                params=params,
            ))
        return steps


def compile_response(
    compiler: PlanCompiler,
    intent_result: IntentResult,
    raw_plan: Mapping[str, Any],
    schema: SheetSchema,
    prompt: str = "",
) -> PlanResponse:
    """Compile and wrap the outcome for the user; an abort yields an empty plan."""
    try:
        plan, warnings = compiler.compile(intent_result, raw_plan, schema, prompt)
    except PlanCompilationError as e:
        compiler.emitter.emit("plan.aborted", {"intent": intent_result.intent.value, "error": str(e)})
        return PlanResponse(
            success=False,
            answer=f"I couldn't complete that: {e}",
            intent=intent_result.intent.value,
            error=str(e),
            error_code="ERR_PLAN_ABORTED",
        )

    answer = _pick(raw_plan, "conversational_answer", "conversationalAnswer")
    if not isinstance(answer, str) or not answer:
        answer = plan.summary
    return PlanResponse(
        success=True,
        answer=answer,
        intent=intent_result.intent.value,
        plan=plan,
        warnings=warnings,
    )
