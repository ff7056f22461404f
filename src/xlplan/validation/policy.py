"""Policy engine: load xlplan-policy.yaml and check plans against it."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from xlplan.contracts.plans import Plan
from xlplan.io.fileops import read_text_safe

POLICY_FILENAME = "xlplan-policy.yaml"


class FilterMode(str, Enum):
    """What FILTER_DATA does with rows that match its condition."""

    DELETE_MATCHING = "delete_matching"
    KEEP_MATCHING = "keep_matching"


class Policy:
    """Runtime knobs for planning and execution."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        data = data or {}
        self.confidence_threshold: float = float(data.get("confidence_threshold", 0.6))
        self.strict_required_params: bool = bool(data.get("strict_required_params", False))
        self.filter_mode: FilterMode = FilterMode(data.get("filter_mode", FilterMode.DELETE_MATCHING.value))
        self.header_scan_rows: int = int(data.get("header_scan_rows", 10))
        self.allowed_actions: list[str] = [a.upper() for a in data.get("allowed_actions", [])]
        self.max_steps: int = int(data.get("max_steps", 0))
        self.events: bool = bool(data.get("events", False))
        llm = data.get("llm") or {}
        self.llm_model: str | None = llm.get("model")
        self.llm_temperature: float = float(llm.get("temperature", 0))

    @classmethod
    def load(cls, path: str | Path) -> "Policy":
        """Load policy from a YAML file."""
        text = read_text_safe(path)
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("Policy file must contain a mapping at the top level.")
        return cls(data)

    @classmethod
    def load_from_dir(cls, directory: str | Path) -> "Policy | None":
        """Try to load xlplan-policy.yaml from a directory. Returns None if not found."""
        path = Path(directory) / POLICY_FILENAME
        if path.exists():
            return cls.load(path)
        return None


def check_plan_policy(policy: Policy, plan: Plan) -> list[dict[str, Any]]:
    """Check a plan against policy rules. Returns list of violations."""
    violations: list[dict[str, Any]] = []

    if policy.allowed_actions:
        for step in plan.steps:
            if step.action.upper() not in policy.allowed_actions:
                violations.append({
                    "type": "action_not_allowed",
                    "severity": "error",
                    "step": step.step_number,
                    "message": f"Step {step.step_number} uses action '{step.action}', which policy does not allow",
                })

    if policy.max_steps and len(plan.steps) > policy.max_steps:
        violations.append({
            "type": "step_limit",
            "severity": "error",
            "message": f"Plan has {len(plan.steps)} steps, exceeding the limit of {policy.max_steps}",
        })

    return violations
