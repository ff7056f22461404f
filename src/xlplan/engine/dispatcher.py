"""Response envelopes, JSON output, and exit code mapping."""

from __future__ import annotations

import sys
from typing import Any

import orjson

from xlplan.contracts.common import (
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
    WarningDetail,
)
from xlplan.contracts.plans import ExecutionResult, PlanResponse

# Exit code mapping
EXIT_CODES = {
    "success": 0,
    "validation": 10,
    "formula": 30,
    "conflict": 40,
    "io": 50,
    "upstream": 60,
    "unsupported": 70,
    "internal": 90,
}

# First matching rule wins; markers are substrings of the upper-cased error code.
_EXIT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("formula", ("FORMULA",)),
    ("conflict", ("LOCK", "CONFLICT")),
    ("upstream", ("UPSTREAM",)),
    ("unsupported", ("UNSUPPORTED",)),
    ("io", ("ERR_IO",)),
    ("validation", (
        "VALIDATION",
        "PLAN_INVALID",
        "PLAN_ABORTED",
        "LOW_CONFIDENCE",
        "POLICY",
        "INVALID_ARGUMENT",
        "USAGE",
        "SHEET_NOT_FOUND",
        "COLUMN_NOT_FOUND",
        "STEP_FAILED",
    )),
    ("io", ("NOT_FOUND", "CORRUPT")),
)


def success_envelope(
    command: str,
    result: Any,
    *,
    target: Target | None = None,
    warnings: list[WarningDetail] | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=True,
        command=command,
        target=target or Target(),
        result=result,
        warnings=warnings or [],
        metrics=Metrics(duration_ms=duration_ms),
    )


def error_envelope(
    command: str,
    code: str,
    message: str,
    *,
    target: Target | None = None,
    result: Any = None,
    details: dict | None = None,
    warnings: list[WarningDetail] | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=False,
        command=command,
        target=target or Target(),
        result=result,
        warnings=warnings or [],
        errors=[ErrorDetail(code=code, message=message, details=details)],
        metrics=Metrics(duration_ms=duration_ms),
    )


def plan_envelope(
    command: str,
    response: PlanResponse,
    *,
    target: Target | None = None,
    extra: dict[str, Any] | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    """Wrap a PlanResponse; unsuccessful responses carry their error code."""
    result = response.to_wire()
    if extra:
        result.update(extra)
    if response.success:
        return success_envelope(
            command, result, target=target, warnings=response.warnings, duration_ms=duration_ms,
        )
    return error_envelope(
        command,
        response.error_code or "ERR_PLAN_ABORTED",
        response.error or response.answer,
        target=target,
        result=result,
        warnings=response.warnings,
        duration_ms=duration_ms,
    )


def attach_step_errors(envelope: ResponseEnvelope, execution: ExecutionResult) -> ResponseEnvelope:
    """Mark the envelope failed when any step failed, one error per failed step."""
    for r in execution.step_results:
        if r.status != "error":
            continue
        envelope.ok = False
        envelope.errors.append(ErrorDetail(
            code="ERR_STEP_FAILED",
            message=f"Step {r.step} ({r.action}): {r.error}",
            details={"step": r.step, "action": r.action},
        ))
    return envelope


def output_json(envelope: ResponseEnvelope) -> str:
    """Serialize envelope to JSON string using orjson."""
    data = envelope.model_dump(mode="json")
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


def print_response(envelope: ResponseEnvelope) -> None:
    sys.stdout.write(output_json(envelope) + "\n")


def exit_code_for(envelope: ResponseEnvelope) -> int:
    """Exit code of the first error's category; 0 for a successful envelope."""
    if envelope.ok:
        return EXIT_CODES["success"]
    if not envelope.errors:
        return EXIT_CODES["internal"]
    code = envelope.errors[0].code.upper()
    for category, markers in _EXIT_RULES:
        if any(marker in code for marker in markers):
            return EXIT_CODES[category]
    return EXIT_CODES["internal"]
