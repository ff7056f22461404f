"""Upstream model client and prompts."""

from xlplan.llm.client import OpenAIPlanningClient, PlanningClient, parse_json_object

__all__ = ["OpenAIPlanningClient", "PlanningClient", "parse_json_object"]
