"""Skill registry: load skills.yaml and answer capability lookups."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from xlplan.io.fileops import read_text_safe

DEFAULT_SKILLS_PATH = Path(__file__).parent / "skills.yaml"

DEFAULT_CHART_TYPE = "column"


class PatternDefinition(BaseModel):
    """A named calculation template with its required parameters."""

    model_config = {"frozen": True}

    builder: str
    required_params: tuple[str, ...] = Field(default_factory=tuple)
    type: Literal["aggregate", "per_row"] = "aggregate"
    description: str = ""


class SkillRegistry:
    """Read-only catalog of supported skills, loaded once and injected."""

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data
        patterns = (data.get("formula") or {}).get("patterns") or {}
        self._patterns: dict[str, PatternDefinition] = {
            name: PatternDefinition(**spec) for name, spec in patterns.items()
        }

    @classmethod
    def load(cls, path: str | Path | None = None) -> "SkillRegistry":
        """Load a registry from YAML. Defaults to the bundled skills.yaml."""
        text = read_text_safe(path or DEFAULT_SKILLS_PATH)
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("Skills file must contain a mapping at the top level.")
        return cls(data)

    def for_intent(self, intent: str) -> dict[str, Any]:
        """Return the registry section for *intent*, or ``{}`` if unknown."""
        return copy.deepcopy(self._data.get(intent) or {})

    # -- formula ---------------------------------------------------------
    def pattern(self, name: Any) -> PatternDefinition | None:
        if not isinstance(name, str) or not name:
            return None
        return self._patterns.get(name)

    @property
    def formula_rules(self) -> dict[str, Any]:
        return dict((self._data.get("formula") or {}).get("rules") or {})

    # -- chart -----------------------------------------------------------
    @property
    def _chart(self) -> dict[str, Any]:
        return self._data.get("chart") or {}

    @property
    def chart_supported_types(self) -> list[str]:
        return [str(t).lower() for t in self._chart.get("supported_types") or []]

    @property
    def chart_default_type(self) -> str:
        return str(self._chart.get("default_type") or DEFAULT_CHART_TYPE).lower()

    def chart_goal_type(self, goal: Any) -> str | None:
        if not isinstance(goal, str):
            return None
        goal_def = (self._chart.get("goals") or {}).get(goal)
        if not goal_def:
            return None
        return goal_def.get("default_type")

    @property
    def pie_max_slices(self) -> int:
        return int((self._chart.get("rules") or {}).get("pie_max_slices", 6))

    @property
    def chart_styling(self) -> dict[str, Any]:
        return dict(self._chart.get("styling") or {})

    # -- clean_data ------------------------------------------------------
    def supports_clean_operation(self, name: Any) -> bool:
        if not isinstance(name, str) or not name:
            return False
        ops = (self._data.get("clean_data") or {}).get("operations") or {}
        return name in ops

    @property
    def high_impact_ratio(self) -> float:
        rules = (self._data.get("clean_data") or {}).get("rules") or {}
        return float(rules.get("high_impact_ratio", 0.5))
