"""Sheet schema and intent classification models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Intent(str, Enum):
    FORMULA = "formula"
    CHART = "chart"
    CLEAN_DATA = "clean_data"
    ORGANIZATION = "organization"
    INSIGHT = "insight"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Header(CamelModel):
    """One column header of a sheet."""

    name: str
    column_letter: str = Field(
        validation_alias=AliasChoices("columnLetter", "column_letter", "column"),
    )
    index: int
    detected_type: str = "empty"
    top_values: list[Any] | None = None
    min_max: tuple[float, float] | None = None


class SheetSchema(CamelModel):
    """Read-only description of a sheet, produced fresh per request."""

    sheet_name: str = ""
    headers: list[Header] = Field(default_factory=list)
    sample_data: list[list[Any]] = Field(default_factory=list)
    row_count: int = 0
    col_count: int = 0
    header_row_number: int = 1


class IntentResult(CamelModel):
    """Classification output: intent, optional chart type, confidence."""

    intent: Intent
    explicit_chart_type: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
