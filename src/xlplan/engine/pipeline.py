"""Request pipeline: classify -> gate on confidence -> plan -> compile (-> execute)."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from xlplan.adapters.base import TabularStore
from xlplan.contracts.common import UpstreamError
from xlplan.contracts.plans import ExecutionResult, PlanResponse
from xlplan.contracts.schema import Intent, IntentResult, SheetSchema
from xlplan.engine.compiler import PlanCompiler, compile_response
from xlplan.engine.executor import StepExecutor
from xlplan.engine.schema import extract_schema
from xlplan.llm.client import PlanningClient
from xlplan.observe.events import EventEmitter, TraceRecorder
from xlplan.skills.registry import SkillRegistry
from xlplan.validation.policy import Policy

CLARIFICATION_ANSWER = "I'm not sure what you want to do. Could you be more specific?"


class PlanningService:
    """Turns one natural-language request into a PlanResponse.

    Nothing is kept between requests: the schema is passed in (or extracted)
    per call and every call builds its own plan.
    """

    def __init__(
        self,
        client: PlanningClient,
        registry: SkillRegistry,
        policy: Policy | None = None,
        *,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.policy = policy or Policy()
        self.emitter = emitter or EventEmitter()
        self.compiler = PlanCompiler(
            registry,
            strict_required_params=self.policy.strict_required_params,
            emitter=self.emitter,
        )

    def classify(self, prompt: str) -> IntentResult:
        raw = self.client.classify(prompt)
        try:
            result = IntentResult.model_validate(raw)
        except ValidationError as e:
            raise UpstreamError(f"Invalid classification response: {e.errors()[0]['msg']}") from e
        self.emitter.emit("plan.classified", {
            "intent": result.intent.value,
            "confidence": result.confidence,
            "explicit_chart_type": result.explicit_chart_type,
        })
        return result

    def plan(self, prompt: str, schema: SheetSchema) -> PlanResponse:
        """Classify, gate and compile. Upstream failures come back as ``success=False``."""
        try:
            intent_result = self.classify(prompt)
            if intent_result.confidence < self.policy.confidence_threshold:
                self.emitter.emit("plan.clarification", {
                    "confidence": intent_result.confidence,
                    "threshold": self.policy.confidence_threshold,
                })
                return PlanResponse(
                    success=False,
                    answer=CLARIFICATION_ANSWER,
                    intent=intent_result.intent.value,
                    error_code="ERR_LOW_CONFIDENCE",
                )

            # insight questions are answered with the formula skills
            effective = Intent.FORMULA if intent_result.intent == Intent.INSIGHT else intent_result.intent
            raw_plan = self.client.plan(
                prompt,
                schema.to_wire(),
                self.registry.for_intent(effective.value),
                intent_result.intent.value,
            )
        except UpstreamError as e:
            return PlanResponse(
                success=False,
                answer="I couldn't reach the planning service. Please try again.",
                error=str(e),
                error_code="ERR_UPSTREAM",
            )

        return compile_response(self.compiler, intent_result, raw_plan, schema, prompt)

    def run(
        self,
        prompt: str,
        store: TabularStore,
        sheet_name: str = "",
        *,
        trace: TraceRecorder | None = None,
    ) -> tuple[PlanResponse, ExecutionResult | None]:
        """Plan against a freshly extracted schema and execute a successful plan."""
        schema = extract_schema(store, sheet_name, scan_rows=self.policy.header_scan_rows)
        response = self.plan(prompt, schema)
        if not response.success or not response.plan.steps:
            return response, None
        executor = StepExecutor(store, self.registry, self.policy, emitter=self.emitter, trace=trace)
        return response, executor.execute(response.plan)


def response_payload(response: PlanResponse, execution: ExecutionResult | None = None) -> dict[str, Any]:
    payload = response.to_wire()
    if execution is not None:
        payload["execution"] = execution.to_wire()
    return payload
