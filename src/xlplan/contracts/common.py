"""Common Pydantic models: response envelope, errors, warnings, metrics."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class WorkbookCorruptError(Exception):
    """Raised when a workbook file cannot be parsed."""


class PlanCompilationError(Exception):
    """Raised when a raw plan is structurally unusable; aborts the whole plan."""


class FormulaBuildError(PlanCompilationError):
    """Raised when a formula template cannot be filled from its parameters."""


class ColumnNotFoundError(LookupError):
    """Raised by the executor when a column identifier matches no header."""


class UpstreamError(Exception):
    """Raised when the classification/planning collaborator fails or returns bad JSON."""


class Target(BaseModel):
    """Identifies the target workbook/sheet for a command."""

    file: str | None = None
    sheet: str | None = None


class WarningDetail(BaseModel):
    """Structured warning."""

    code: str
    message: str
    path: str | None = None


class ErrorDetail(BaseModel):
    """Structured error."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class Metrics(BaseModel):
    """Execution metrics."""

    duration_ms: int = 0


class ResponseEnvelope(BaseModel):
    """Standard response envelope returned by every command."""

    ok: bool = True
    command: str = ""
    target: Target = Field(default_factory=Target)
    result: Any = None
    warnings: list[WarningDetail] = Field(default_factory=list)
    errors: list[ErrorDetail] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
