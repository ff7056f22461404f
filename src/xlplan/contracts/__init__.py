"""Pydantic models for schemas, plans, step results, and responses."""

from xlplan.contracts.common import (
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
    WarningDetail,
)
from xlplan.contracts.plans import (
    ActionTag,
    CriterionClause,
    ExecutionResult,
    Plan,
    PlanResponse,
    Step,
    StepResult,
    ValidationResult,
)
from xlplan.contracts.schema import Header, Intent, IntentResult, SheetSchema

__all__ = [
    "ActionTag",
    "CriterionClause",
    "ErrorDetail",
    "ExecutionResult",
    "Header",
    "Intent",
    "IntentResult",
    "Metrics",
    "Plan",
    "PlanResponse",
    "ResponseEnvelope",
    "SheetSchema",
    "Step",
    "StepResult",
    "ValidationResult",
    "Target",
    "WarningDetail",
]
