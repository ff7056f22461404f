"""System prompts for the classification and planning calls."""

from __future__ import annotations

import json
from typing import Any

CLASSIFICATION_PROMPT = """Classify the main intent of a request about a spreadsheet.

Intents:
- "formula": anything that needs a calculated result from the data (totals,
  averages, counts, conditional counts or sums, growth, comparisons of numbers).
- "chart": visualizing data as a chart or graph.
- "clean_data": filtering out rows, removing duplicates, trimming spaces,
  fixing text case or converting text to numbers.
- "organization": sorting, number formatting, adding or removing columns.
- "insight": questions about what the data means that are answered best with
  a few computed values.

Return a JSON object only:
{
  "intent": "formula" | "chart" | "clean_data" | "organization" | "insight",
  "explicit_chart_type": "line" | "bar" | "column" | "pie" | "scatter" | "area" | null,
  "confidence": number between 0 and 1
}"""

PLANNING_PROMPT = """You plan spreadsheet actions. Return a JSON object only.
Pick only patterns and operations listed in the skills below.

Rules:
1. Use the schema headers for every column reference. Prefer column letters
   ("A", "B", ...) but header names are accepted.
2. Never write raw formulas except for the "row_calc" pattern.
3. For a count or sum with a condition use count_if / sum_if, or count_ifs /
   sum_ifs for several conditions. For OR conditions emit one calculation
   per alternative.
4. Give every calculation a clear, specific label.

Skills:
{skills}

Response shape by intent:
- formula / insight:
  {{"conversational_answer": string,
    "calculations": [{{"pattern": string, "parameters": {{}}, "label": string}}]}}
- chart:
  {{"conversational_answer": string, "chart_goal": string,
    "explicit_chart_type": string | null, "x_column": string,
    "y_columns": [string], "title": string}}
- clean_data:
  {{"conversational_answer": string,
    "operations": [{{"operation": string, "column": string, "operator": string,
                     "value": any, "fillValue": any, "description": string}}]}}
- organization:
  {{"conversational_answer": string,
    "operations": [{{"operation": string, "column": string, "order": string,
                     "range": string, "format": string}}]}}"""


def planning_system_prompt(skill_section: dict[str, Any]) -> str:
    return PLANNING_PROMPT.format(skills=json.dumps(skill_section, indent=2, default=str))


def planning_user_message(prompt: str, schema: dict[str, Any], intent: str) -> str:
    return (
        f"Intent: {intent}\n"
        f"Prompt: {prompt}\n"
        f"Schema: {json.dumps(schema, default=str)}"
    )
