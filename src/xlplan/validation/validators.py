"""Validation logic for compiled plans."""

from __future__ import annotations

from typing import Any, Iterable

from pydantic import ValidationError

from xlplan.contracts.plans import PARAMS_BY_ACTION, ActionTag, Plan, ValidationResult
from xlplan.contracts.schema import Header
from xlplan.engine.resolver import is_column_letter, resolve_column
from xlplan.validation.policy import Policy, check_plan_policy

# Params that name a single column / a list of columns, per wire spelling.
_COLUMN_KEYS = ("column", "xAxisColumn", "x_axis_column")
_COLUMN_LIST_KEYS = ("columns", "seriesColumns", "series_columns")


def _step_columns(params: dict[str, Any]) -> Iterable[Any]:
    for key in _COLUMN_KEYS:
        if params.get(key):
            yield params[key]
    for key in _COLUMN_LIST_KEYS:
        values = params.get(key)
        if isinstance(values, list):
            yield from values


def validate_plan(
    plan: Plan,
    *,
    policy: Policy | None = None,
    headers: list[Header] | None = None,
) -> ValidationResult:
    """Check numbering, action tags, params shape, columns and policy before execution."""
    checks: list[dict[str, Any]] = []

    expected = list(range(1, len(plan.steps) + 1))
    actual = [s.step_number for s in plan.steps]
    checks.append({
        "type": "step_numbering",
        "passed": actual == expected,
        "message": "Steps are numbered sequentially from 1" if actual == expected
        else f"Step numbers {actual} are not sequential from 1",
    })

    for step in plan.steps:
        try:
            tag = ActionTag(step.action.upper())
        except ValueError:
            checks.append({
                "type": "action_known",
                "step": step.step_number,
                "passed": False,
                "message": f"Step {step.step_number} uses unknown action '{step.action}'",
            })
            continue

        try:
            PARAMS_BY_ACTION[tag].model_validate(step.params)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first["loc"]) or "params"
            checks.append({
                "type": "params_valid",
                "step": step.step_number,
                "passed": False,
                "message": f"Step {step.step_number} ({tag.value}): {field}: {first['msg']}",
            })
            continue

        if headers is not None:
            missing = [
                c for c in _step_columns(step.params)
                if not is_column_letter(resolve_column(c, headers))
            ]
            if missing:
                checks.append({
                    "type": "column_exists",
                    "step": step.step_number,
                    "passed": False,
                    "message": f"Step {step.step_number} references unknown columns: {', '.join(map(str, missing))}",
                })
                continue

        checks.append({
            "type": "step_valid",
            "step": step.step_number,
            "passed": True,
            "message": f"Step {step.step_number} ({tag.value}) is valid",
        })

    if policy is not None:
        for violation in check_plan_policy(policy, plan):
            checks.append({
                "type": "policy",
                "step": violation.get("step"),
                "passed": False,
                "message": violation["message"],
            })

    valid = all(c.get("passed", True) for c in checks)
    return ValidationResult(valid=valid, checks=checks)
