"""Result schemas for the analysis facets.

Completion responses are loosely shaped JSON. Every schema here accepts the
common key spellings, clamps scores into range and fills defaults, so a
partially formed response still yields a well-typed result.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import AliasChoices, BaseModel, Field, field_validator

from .models import FacetType


def _clamp(value: Any, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(number, low), high)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class _Lenient(BaseModel):
    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}


class ConflictItem(_Lenient):
    location: str = Field(default="", validation_alias=AliasChoices("location", "table", "tableId", "table_id"))
    quote: str = Field(default="", validation_alias=AliasChoices("quote", "text"))
    severity: float = 0.0
    description: str = ""

    @field_validator("location", "quote", "description", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("severity", mode="before")
    @classmethod
    def clamp_severity(cls, value: Any) -> float:
        return _clamp(value, 0.0, 1.0)


class AgreementItem(_Lenient):
    location: str = Field(default="", validation_alias=AliasChoices("location", "table", "tableId", "table_id"))
    quote: str = Field(default="", validation_alias=AliasChoices("quote", "text"))
    strength: float = 0.0
    description: str = ""

    @field_validator("location", "quote", "description", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("strength", mode="before")
    @classmethod
    def clamp_strength(cls, value: Any) -> float:
        return _clamp(value, 0.0, 1.0)


class ThemeItem(_Lenient):
    theme: str = Field(default="", validation_alias=AliasChoices("theme", "label", "name", "title"))
    frequency: int = 0
    locations: List[str] = Field(default_factory=list, validation_alias=AliasChoices("locations", "tables"))
    sentiment: float = 0.0

    @field_validator("frequency", mode="before")
    @classmethod
    def coerce_frequency(cls, value: Any) -> int:
        try:
            return max(int(float(value)), 0)
        except (TypeError, ValueError):
            return 0

    @field_validator("locations", mode="before")
    @classmethod
    def coerce_locations(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    @field_validator("sentiment", mode="before")
    @classmethod
    def clamp_sentiment(cls, value: Any) -> float:
        return _clamp(value, -1.0, 1.0)


class FacetResult(_Lenient):
    note: Optional[str] = None


class ConflictsResult(FacetResult):
    conflicts: List[ConflictItem] = Field(default_factory=list)


class AgreementsResult(FacetResult):
    agreements: List[AgreementItem] = Field(default_factory=list)


class ThemesResult(FacetResult):
    themes: List[ThemeItem] = Field(default_factory=list)


class SentimentResult(FacetResult):
    overall: float = 0.0
    by_location: Dict[str, float] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("by_location", "byLocation", "byTable", "by_table"),
    )
    interpretation: str = ""
    insights: List[str] = Field(default_factory=list)

    @field_validator("overall", mode="before")
    @classmethod
    def clamp_overall(cls, value: Any) -> float:
        return _clamp(value, -1.0, 1.0)

    @field_validator("by_location", mode="before")
    @classmethod
    def clamp_by_location(cls, value: Any) -> Dict[str, float]:
        if not isinstance(value, dict):
            return {}
        return {str(key): _clamp(score, -1.0, 1.0) for key, score in value.items()}

    @field_validator("insights", mode="before")
    @classmethod
    def coerce_insights(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]


FACET_SCHEMAS: Dict[FacetType, Type[FacetResult]] = {
    FacetType.CONFLICTS: ConflictsResult,
    FacetType.AGREEMENTS: AgreementsResult,
    FacetType.THEMES: ThemesResult,
    FacetType.SENTIMENT: SentimentResult,
}

_LIST_KEYS = {
    FacetType.CONFLICTS: "conflicts",
    FacetType.AGREEMENTS: "agreements",
    FacetType.THEMES: "themes",
}


def parse_facet_payload(facet: FacetType, data: Any) -> FacetResult:
    """Validate a decoded response against the facet schema.

    A bare list is accepted for list-shaped facets, and a payload nested under
    the facet name (``{"sentiment": {...}}``) is unwrapped.
    """

    schema = FACET_SCHEMAS[facet]
    list_key = _LIST_KEYS.get(facet)
    if isinstance(data, list) and list_key:
        data = {list_key: data}
    if isinstance(data, dict) and list_key is None and isinstance(data.get(facet.value), dict):
        data = data[facet.value]
    if not isinstance(data, dict):
        raise ValueError(f"{facet.value} response is not a JSON object")
    return schema.model_validate(data)


def fallback_result(facet: FacetType, note: str) -> FacetResult:
    """Neutral result used when a facet cannot be produced."""

    if facet is FacetType.SENTIMENT:
        return SentimentResult(overall=0.0, interpretation=note, note=note)
    return FACET_SCHEMAS[facet](note=note)


__all__ = [
    "AgreementItem",
    "AgreementsResult",
    "ConflictItem",
    "ConflictsResult",
    "FACET_SCHEMAS",
    "FacetResult",
    "SentimentResult",
    "ThemeItem",
    "ThemesResult",
    "fallback_result",
    "parse_facet_payload",
]
