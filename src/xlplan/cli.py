"""Typer CLI application: plan and execute natural-language spreadsheet requests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Optional

import portalocker
import typer

import xlplan
from xlplan.contracts.common import (
    FormulaBuildError,
    PlanCompilationError,
    Target,
    UpstreamError,
    WorkbookCorruptError,
)
from xlplan.contracts.plans import Plan
from xlplan.contracts.schema import IntentResult, SheetSchema
from xlplan.engine.dispatcher import (
    attach_step_errors,
    error_envelope,
    exit_code_for,
    plan_envelope,
    print_response,
    success_envelope,
)
from xlplan.io.fileops import read_text_safe
from xlplan.observe.events import EventEmitter, Timer
from xlplan.skills.registry import SkillRegistry
from xlplan.validation.policy import Policy

READ_ONLY_ACTIONS = frozenset({"QUERY_VALUE"})

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_MAIN_HELP = """\
Turn natural-language requests about a spreadsheet into typed, deterministic
step plans and execute them against .xlsx workbooks.

**Recommended workflow:**  schema → plan → validate → execute

1. `xlplan schema -f sales.xlsx`  : headers, detected types, sample rows
2. `xlplan plan -f sales.xlsx --prompt "total revenue for the East region" --out plan.json`
3. `xlplan validate -f sales.xlsx --plan plan.json`
4. `xlplan execute -f sales.xlsx --plan plan.json --dry-run`  : preview results
5. `xlplan execute -f sales.xlsx --plan plan.json --backup`   : apply with backup

Offline: `xlplan compile --intent formula --raw-plan raw.json -f sales.xlsx` compiles a
planner response without calling the model.

**Every command** returns a JSON `ResponseEnvelope`:
`{"ok": bool, "command": "...", "result": {...}, "errors": [...], "warnings": [...], "metrics": {"duration_ms": N}}`

**Exit codes:** 0=success, 10=validation, 30=formula, 40=conflict, 50=io, 60=upstream, 70=unsupported, 90=internal
"""

app = typer.Typer(
    name="xlplan",
    help=_MAIN_HELP,
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@app.callback(invoke_without_command=True)
def _root(
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Print version and exit.", is_eager=True)
    ] = False,
) -> None:
    if version:
        typer.echo(xlplan.__version__)
        raise typer.Exit()


# Type aliases for common options
FilePath = Annotated[str, typer.Option("--file", "-f", help="Path to .xlsx workbook file")]
SheetOpt = Annotated[Optional[str], typer.Option("--sheet", "-s", help="Sheet name (default: active sheet)")]
PolicyOpt = Annotated[Optional[str], typer.Option("--policy", help="Path to xlplan-policy.yaml (default: next to the workbook)")]
SkillsOpt = Annotated[Optional[str], typer.Option("--skills", help="Path to a skills YAML replacing the bundled registry")]
EventsFlag = Annotated[bool, typer.Option("--events", help="Emit NDJSON lifecycle events to stderr")]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _emit(envelope, code=None):
    print_response(envelope)
    raise typer.Exit(code if code is not None else exit_code_for(envelope))


def _load_ctx_or_emit(file: str, cmd: str):
    """Load a WorkbookContext, or emit an error envelope."""
    from xlplan.engine.context import WorkbookContext

    try:
        return WorkbookContext(file)
    except FileNotFoundError:
        _emit(error_envelope(cmd, "ERR_WORKBOOK_NOT_FOUND", f"File not found: {file}", target=Target(file=file)))
    except WorkbookCorruptError as e:
        _emit(error_envelope(cmd, "ERR_WORKBOOK_CORRUPT", str(e), target=Target(file=file)))


def _store_or_emit(ctx, sheet: str | None, cmd: str, file: str):
    try:
        return ctx.store(sheet)
    except KeyError:
        ctx.close()
        _emit(error_envelope(cmd, "ERR_SHEET_NOT_FOUND", f"Sheet not found: {sheet}", target=Target(file=file, sheet=sheet)))


def _load_policy(policy_path: str | None, file: str | None, cmd: str) -> Policy:
    try:
        if policy_path:
            return Policy.load(policy_path)
        if file:
            return Policy.load_from_dir(Path(file).resolve().parent) or Policy()
        return Policy()
    except FileNotFoundError:
        _emit(error_envelope(cmd, "ERR_IO_POLICY_NOT_FOUND", f"Policy file not found: {policy_path}"))
    except ValueError as e:
        _emit(error_envelope(cmd, "ERR_POLICY_INVALID", f"Invalid policy: {e}"))


def _load_registry(skills_path: str | None, cmd: str) -> SkillRegistry:
    try:
        return SkillRegistry.load(skills_path)
    except FileNotFoundError:
        _emit(error_envelope(cmd, "ERR_IO_SKILLS_NOT_FOUND", f"Skills file not found: {skills_path}"))
    except ValueError as e:
        _emit(error_envelope(cmd, "ERR_VALIDATION_SKILLS", f"Invalid skills file: {e}"))


def _read_json(path: str) -> Any:
    try:
        return json.loads(read_text_safe(path))
    except FileNotFoundError:
        raise
    except Exception as e:
        raise ValueError(f"Cannot parse {path}: {e}") from e


def _load_raw_plan(path: str) -> dict[str, Any]:
    """Load a plan JSON file. Accepts a bare plan, a plan response, or an envelope."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValueError("Plan file must contain a JSON object.")
    if {"ok", "command", "result"}.issubset(data):
        data = data.get("result") or {}
    if isinstance(data.get("plan"), dict):
        data = data["plan"]
    if not isinstance(data.get("steps"), list):
        raise ValueError("Plan file has no 'steps' list.")
    return data


def _normalized_plan(raw: dict[str, Any]) -> Plan:
    from xlplan.engine.executor import normalize_step

    steps = [normalize_step(s, i) for i, s in enumerate(raw["steps"], start=1)]
    return Plan(summary=str(raw.get("summary") or ""), steps=steps)


def _write_json(path: str, data: Any) -> None:
    Path(path).write_text(json.dumps(data, indent=2, default=str))


def _planning_client(policy: Policy):
    from xlplan.llm.client import OpenAIPlanningClient

    return OpenAIPlanningClient(model=policy.llm_model, temperature=policy.llm_temperature)


# ---------------------------------------------------------------------------
# xlplan version
# ---------------------------------------------------------------------------
@app.command()
def version():
    """Print the xlplan version.

    Example: `xlplan version`
    """
    _emit(success_envelope("version", {"version": xlplan.__version__}))


# ---------------------------------------------------------------------------
# xlplan skills
# ---------------------------------------------------------------------------
@app.command()
def skills(
    intent: Annotated[Optional[str], typer.Option("--intent", "-i", help="Only this intent's section (formula, chart, clean_data, organization)")] = None,
    skills_path: SkillsOpt = None,
):
    """Show the skill registry the planner is allowed to choose from.

    Example: `xlplan skills --intent chart`
    """
    registry = _load_registry(skills_path, "skills")
    if intent:
        section = registry.for_intent(intent)
        if not section:
            _emit(error_envelope("skills", "ERR_UNSUPPORTED_INTENT", f"No skills for intent: {intent}"))
        result = {"intent": intent, "skills": section}
    else:
        result = {
            name: registry.for_intent(name)
            for name in ("formula", "chart", "clean_data", "organization")
        }
    _emit(success_envelope("skills", result))


# ---------------------------------------------------------------------------
# xlplan schema
# ---------------------------------------------------------------------------
@app.command()
def schema(
    file: FilePath,
    sheet: SheetOpt = None,
    policy_path: PolicyOpt = None,
):
    """Extract the sheet schema sent to the planner.

    Detects the header row, column types, top values and numeric ranges.

    Example: `xlplan schema -f sales.xlsx --sheet Orders`
    """
    from xlplan.engine.schema import extract_schema

    policy = _load_policy(policy_path, file, "schema")
    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "schema")
        store = _store_or_emit(ctx, sheet, "schema", file)
        sheet_name = store.ws.title
        result = extract_schema(store, sheet_name, scan_rows=policy.header_scan_rows)
        ctx.close()
    _emit(success_envelope(
        "schema", result.to_wire(), target=Target(file=file, sheet=sheet_name), duration_ms=t.elapsed_ms,
    ))


# ---------------------------------------------------------------------------
# xlplan compile
# ---------------------------------------------------------------------------
@app.command("compile")
def compile_cmd(
    intent: Annotated[str, typer.Option("--intent", "-i", help="Classified intent: formula, chart, clean_data, organization, insight")],
    raw_plan_path: Annotated[str, typer.Option("--raw-plan", help="Planner response JSON to compile")],
    file: Annotated[Optional[str], typer.Option("--file", "-f", help="Workbook to read headers from")] = None,
    schema_path: Annotated[Optional[str], typer.Option("--schema", help="Schema JSON (as printed by `xlplan schema`)")] = None,
    sheet: SheetOpt = None,
    explicit_chart_type: Annotated[Optional[str], typer.Option("--chart-type", help="Chart type named in the request")] = None,
    prompt: Annotated[str, typer.Option("--prompt", help="Original request text (default chart title)")] = "",
    out: Annotated[Optional[str], typer.Option("--out", help="Write the compiled plan JSON to this path")] = None,
    policy_path: PolicyOpt = None,
    skills_path: SkillsOpt = None,
    events: EventsFlag = False,
):
    """Compile a planner response into a typed step plan, without calling a model.

    Example: `xlplan compile --intent formula --raw-plan raw.json -f sales.xlsx --out plan.json`
    """
    from xlplan.engine.compiler import PlanCompiler
    from xlplan.engine.schema import extract_schema

    policy = _load_policy(policy_path, file, "compile")
    registry = _load_registry(skills_path, "compile")

    with Timer() as t:
        try:
            intent_result = IntentResult(intent=intent, explicit_chart_type=explicit_chart_type, confidence=1.0)
        except ValueError:
            _emit(error_envelope("compile", "ERR_UNSUPPORTED_INTENT", f"Unknown intent: {intent}"))
        try:
            raw_plan = _read_json(raw_plan_path)
            if schema_path:
                sheet_schema = SheetSchema.model_validate(_read_json(schema_path))
            elif file:
                ctx = _load_ctx_or_emit(file, "compile")
                store = _store_or_emit(ctx, sheet, "compile", file)
                sheet_schema = extract_schema(store, store.ws.title, scan_rows=policy.header_scan_rows)
                ctx.close()
            else:
                sheet_schema = SheetSchema()
        except FileNotFoundError as e:
            _emit(error_envelope("compile", "ERR_IO_NOT_FOUND", f"File not found: {e.filename}"))
        except ValueError as e:
            _emit(error_envelope("compile", "ERR_INVALID_ARGUMENT", str(e)))

        compiler = PlanCompiler(
            registry,
            strict_required_params=policy.strict_required_params,
            emitter=EventEmitter(enabled=events or policy.events),
        )
        try:
            plan, warnings = compiler.compile(intent_result, raw_plan, sheet_schema, prompt)
        except PlanCompilationError as e:
            code = "ERR_FORMULA_BUILD" if isinstance(e, FormulaBuildError) else "ERR_PLAN_ABORTED"
            _emit(error_envelope("compile", code, f"I couldn't complete that: {e}", target=Target(file=file)))

    if out:
        _write_json(out, plan.to_wire())
    _emit(success_envelope(
        "compile", {"plan": plan.to_wire(), "written_to": out},
        target=Target(file=file), warnings=warnings, duration_ms=t.elapsed_ms,
    ))


# ---------------------------------------------------------------------------
# xlplan validate
# ---------------------------------------------------------------------------
@app.command()
def validate(
    file: FilePath,
    plan_path: Annotated[str, typer.Option("--plan", help="Plan JSON to check")],
    sheet: SheetOpt = None,
    policy_path: PolicyOpt = None,
):
    """Check a plan before executing it.

    Verifies step numbering, action tags, parameter shapes, that referenced
    columns exist on the sheet, and policy limits.

    Example: `xlplan validate -f sales.xlsx --plan plan.json`
    """
    from xlplan.engine.layout import detect_layout, read_headers
    from xlplan.validation.validators import validate_plan

    policy = _load_policy(policy_path, file, "validate")
    with Timer() as t:
        try:
            plan = _normalized_plan(_load_raw_plan(plan_path))
        except FileNotFoundError:
            _emit(error_envelope("validate", "ERR_IO_PLAN_NOT_FOUND", f"Plan file not found: {plan_path}"))
        except ValueError as e:
            _emit(error_envelope("validate", "ERR_PLAN_INVALID", str(e), target=Target(file=file)))

        ctx = _load_ctx_or_emit(file, "validate")
        store = _store_or_emit(ctx, sheet, "validate", file)
        headers = read_headers(store, detect_layout(store, policy.header_scan_rows))
        ctx.close()
        result = validate_plan(plan, policy=policy, headers=headers)

    target = Target(file=file, sheet=sheet)
    if not result.valid:
        _emit(error_envelope(
            "validate", "ERR_VALIDATION_FAILED", "Plan validation failed",
            target=target, result=result.to_wire(), duration_ms=t.elapsed_ms,
        ))
    _emit(success_envelope("validate", result.to_wire(), target=target, duration_ms=t.elapsed_ms))


# ---------------------------------------------------------------------------
# xlplan plan
# ---------------------------------------------------------------------------
@app.command("plan")
def plan_cmd(
    file: FilePath,
    prompt: Annotated[str, typer.Option("--prompt", "-p", help="The request in plain language")],
    sheet: SheetOpt = None,
    out: Annotated[Optional[str], typer.Option("--out", help="Write the plan JSON to this path")] = None,
    policy_path: PolicyOpt = None,
    skills_path: SkillsOpt = None,
    events: EventsFlag = False,
):
    """Classify a request and compile it into a step plan. Read-only.

    Needs `OPENAI_API_KEY` (and optionally `OPENAI_BASE_URL`, `XLPLAN_MODEL`).

    Example: `xlplan plan -f sales.xlsx -p "average order value by month" --out plan.json`
    """
    from xlplan.engine.pipeline import PlanningService
    from xlplan.engine.schema import extract_schema

    policy = _load_policy(policy_path, file, "plan")
    registry = _load_registry(skills_path, "plan")
    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "plan")
        store = _store_or_emit(ctx, sheet, "plan", file)
        sheet_name = store.ws.title
        sheet_schema = extract_schema(store, sheet_name, scan_rows=policy.header_scan_rows)
        ctx.close()
        try:
            client = _planning_client(policy)
        except UpstreamError as e:
            _emit(error_envelope("plan", "ERR_UPSTREAM_CONFIG", str(e)))
        service = PlanningService(client, registry, policy, emitter=EventEmitter(enabled=events or policy.events))
        response = service.plan(prompt, sheet_schema)

    if out and response.success:
        _write_json(out, response.plan.to_wire())
    _emit(plan_envelope(
        "plan", response, target=Target(file=file, sheet=sheet_name),
        extra={"written_to": out}, duration_ms=t.elapsed_ms,
    ))


# ---------------------------------------------------------------------------
# xlplan execute
# ---------------------------------------------------------------------------
def _execute_locked(
    command: str,
    file: str,
    sheet: str | None,
    *,
    policy: Policy,
    registry: SkillRegistry,
    emitter: EventEmitter,
    dry_run: bool,
    do_backup: bool,
    trace_path: str | None,
    plan_source,
) -> dict[str, Any]:
    """Hold the workbook lock for the whole read-modify-write cycle.

    *plan_source* receives the store and returns ``(plan_like, response)``;
    a ``None`` plan means there is nothing to execute.
    """
    from xlplan.engine.executor import StepExecutor
    from xlplan.io.fileops import WorkbookLock
    from xlplan.io.fileops import backup as make_backup
    from xlplan.io.fileops import fingerprint
    from xlplan.observe.events import TraceRecorder

    with WorkbookLock(file, command=command):
        ctx = _load_ctx_or_emit(file, command)
        store = _store_or_emit(ctx, sheet, command, file)
        fp_before = ctx.fp
        plan_like, response = plan_source(store)
        if plan_like is None:
            ctx.close()
            return {"response": response, "execution": None, "fingerprint_before": fp_before}

        trace = TraceRecorder() if trace_path else None
        execution = StepExecutor(store, registry, policy, emitter=emitter, trace=trace).execute(plan_like)

        backup_path = None
        fp_after = None
        saved = False
        mutated = any(
            r.status == "success" and r.action not in READ_ONLY_ACTIONS for r in execution.step_results
        )
        if not dry_run and mutated:
            if do_backup:
                backup_path = make_backup(file)
            ctx.save(file)
            fp_after = fingerprint(file)
            saved = True
        ctx.close()

    saved_trace = trace.save(trace_path) if trace is not None else None
    return {
        "response": response,
        "execution": execution,
        "sheet": store.ws.title,
        "saved": saved,
        "dry_run": dry_run,
        "backup_path": backup_path,
        "fingerprint_before": fp_before,
        "fingerprint_after": fp_after,
        "trace_path": saved_trace,
    }


def _lock_held(command: str, file: str):
    from xlplan.io.fileops import lock_holder

    holder = lock_holder(file)
    who = f" (pid {holder['pid']}, {holder.get('command') or 'unknown command'})" if "pid" in holder else ""
    return error_envelope(
        command, "ERR_LOCK_HELD", f"Workbook is locked by another process{who}: {file}",
        target=Target(file=file), details=holder or None,
    )


def _execution_result(outcome: dict[str, Any]) -> dict[str, Any]:
    return {
        "execution": outcome["execution"].to_wire(),
        "saved": outcome["saved"],
        "dry_run": outcome["dry_run"],
        "backup_path": outcome["backup_path"],
        "fingerprint_before": outcome["fingerprint_before"],
        "fingerprint_after": outcome["fingerprint_after"],
        "trace_path": outcome["trace_path"],
    }


@app.command()
def execute(
    file: FilePath,
    plan_path: Annotated[str, typer.Option("--plan", help="Plan JSON to execute")],
    sheet: SheetOpt = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Run every step but do not write the workbook")] = False,
    do_backup: Annotated[bool, typer.Option("--backup/--no-backup", help="Create timestamped .bak copy before writing")] = False,
    trace_path: Annotated[Optional[str], typer.Option("--trace", help="Write per-step timings to this JSON file")] = None,
    policy_path: PolicyOpt = None,
    skills_path: SkillsOpt = None,
    events: EventsFlag = False,
):
    """Execute a plan against a workbook. Mutating.

    Steps run in order; a failing step is reported and the rest still run.
    The workbook is locked for the whole run and written atomically.

    Example (preview): `xlplan execute -f sales.xlsx --plan plan.json --dry-run`

    Example (apply): `xlplan execute -f sales.xlsx --plan plan.json --backup`
    """
    policy = _load_policy(policy_path, file, "execute")
    registry = _load_registry(skills_path, "execute")
    try:
        raw_plan = _load_raw_plan(plan_path)
    except FileNotFoundError:
        _emit(error_envelope("execute", "ERR_IO_PLAN_NOT_FOUND", f"Plan file not found: {plan_path}"))
    except ValueError as e:
        _emit(error_envelope("execute", "ERR_PLAN_INVALID", str(e), target=Target(file=file)))

    with Timer() as t:
        try:
            outcome = _execute_locked(
                "execute", file, sheet,
                policy=policy, registry=registry,
                emitter=EventEmitter(enabled=events or policy.events),
                dry_run=dry_run, do_backup=do_backup, trace_path=trace_path,
                plan_source=lambda store: (raw_plan, None),
            )
        except portalocker.LockException:
            _emit(_lock_held("execute", file))

    target = Target(file=file, sheet=outcome["sheet"])
    env = success_envelope("execute", _execution_result(outcome), target=target, duration_ms=t.elapsed_ms)
    _emit(attach_step_errors(env, outcome["execution"]))


# ---------------------------------------------------------------------------
# xlplan run
# ---------------------------------------------------------------------------
@app.command()
def run(
    file: FilePath,
    prompt: Annotated[str, typer.Option("--prompt", "-p", help="The request in plain language")],
    sheet: SheetOpt = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Plan and run every step but do not write the workbook")] = False,
    do_backup: Annotated[bool, typer.Option("--backup/--no-backup", help="Create timestamped .bak copy before writing")] = False,
    trace_path: Annotated[Optional[str], typer.Option("--trace", help="Write per-step timings to this JSON file")] = None,
    policy_path: PolicyOpt = None,
    skills_path: SkillsOpt = None,
    events: EventsFlag = False,
):
    """Plan a request and execute it in one go. Mutating.

    Example: `xlplan run -f sales.xlsx -p "remove rows where Status is Cancelled" --backup`
    """
    from xlplan.engine.pipeline import PlanningService
    from xlplan.engine.schema import extract_schema

    policy = _load_policy(policy_path, file, "run")
    registry = _load_registry(skills_path, "run")
    emitter = EventEmitter(enabled=events or policy.events)
    try:
        client = _planning_client(policy)
    except UpstreamError as e:
        _emit(error_envelope("run", "ERR_UPSTREAM_CONFIG", str(e)))
    service = PlanningService(client, registry, policy, emitter=emitter)

    def plan_source(store):
        sheet_schema = extract_schema(store, store.ws.title, scan_rows=policy.header_scan_rows)
        response = service.plan(prompt, sheet_schema)
        if not response.success or not response.plan.steps:
            return None, response
        return response.plan, response

    with Timer() as t:
        try:
            outcome = _execute_locked(
                "run", file, sheet,
                policy=policy, registry=registry, emitter=emitter,
                dry_run=dry_run, do_backup=do_backup, trace_path=trace_path,
                plan_source=plan_source,
            )
        except portalocker.LockException:
            _emit(_lock_held("run", file))

    response = outcome["response"]
    target = Target(file=file, sheet=sheet)
    if outcome["execution"] is None:
        _emit(plan_envelope("run", response, target=target, duration_ms=t.elapsed_ms))

    env = plan_envelope(
        "run", response, target=target, extra=_execution_result(outcome), duration_ms=t.elapsed_ms,
    )
    env.target = Target(file=file, sheet=outcome["sheet"])
    _emit(attach_step_errors(env, outcome["execution"]))


# ---------------------------------------------------------------------------
# Entrypoint (for `python -m xlplan`)
# ---------------------------------------------------------------------------
def main() -> None:
    try:
        app()
    except SystemExit:
        raise
    except Exception as exc:
        # Unhandled exceptions still produce a JSON error envelope.
        env = error_envelope("unknown", "ERR_INTERNAL", str(exc))
        print_response(env)
        raise SystemExit(90) from exc


if __name__ == "__main__":
    main()
