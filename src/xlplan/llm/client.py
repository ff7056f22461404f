"""Upstream classification/planning client over an OpenAI-compatible API."""

from __future__ import annotations

import json
import os
from typing import Any, Protocol

from openai import OpenAI, OpenAIError

from xlplan.contracts.common import UpstreamError
from xlplan.llm.prompts import CLASSIFICATION_PROMPT, planning_system_prompt, planning_user_message

DEFAULT_MODEL = "gpt-4o-mini"


class PlanningClient(Protocol):
    """What the pipeline needs from the upstream collaborator."""

    def classify(self, prompt: str) -> dict[str, Any]: ...

    def plan(
        self,
        prompt: str,
        schema: dict[str, Any],
        skill_section: dict[str, Any],
        intent: str,
    ) -> dict[str, Any]: ...


def parse_json_object(content: str | None) -> dict[str, Any]:
    """Parse a model reply that must be a single JSON object."""
    if not content:
        raise UpstreamError("Empty response from model")
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise UpstreamError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamError("Model response is not a JSON object")
    return data


class OpenAIPlanningClient:
    """Chat-completions client returning parsed JSON objects. No retries."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float = 0,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL")
        self.model = model or os.getenv("XLPLAN_MODEL") or DEFAULT_MODEL
        self.temperature = temperature

        if not self.api_key:
            raise UpstreamError("OPENAI_API_KEY is not set")

        client_kwargs: dict[str, Any] = {"api_key": self.api_key}
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        self.client = OpenAI(**client_kwargs)

    def _call(self, system_prompt: str, user_message: str) -> dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise UpstreamError(f"Model request failed: {e}") from e
        if not response.choices:
            raise UpstreamError("Model returned no choices")
        return parse_json_object(response.choices[0].message.content)

    def classify(self, prompt: str) -> dict[str, Any]:
        return self._call(CLASSIFICATION_PROMPT, prompt)

    def plan(
        self,
        prompt: str,
        schema: dict[str, Any],
        skill_section: dict[str, Any],
        intent: str,
    ) -> dict[str, Any]:
        return self._call(
            planning_system_prompt(skill_section),
            planning_user_message(prompt, schema, intent),
        )
