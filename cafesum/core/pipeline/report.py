"""Facilitator report assembled from stored facet results."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ...data.facets import AgreementsResult, ConflictsResult, SentimentResult, ThemesResult
from ...logging import get_logger

LOGGER = get_logger(__name__)

_PRIORITIES = ("high", "medium", "low")


class Recommendation(BaseModel):
    model_config = {"extra": "ignore"}

    type: str = "facilitation"
    priority: str = "medium"
    title: str = ""
    description: str = ""
    rationale: str = ""

    @field_validator("priority", mode="before")
    @classmethod
    def normalise_priority(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in _PRIORITIES else "medium"


class ExecutiveSummary(BaseModel):
    overall_sentiment: float = 0.0
    sentiment_interpretation: str = ""
    conflict_count: int = 0
    agreement_count: int = 0
    theme_count: int = 0
    top_themes: List[str] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)


class FacilitatorReport(BaseModel):
    session_id: str
    status: str = "completed"
    message: Optional[str] = None
    executive_summary: ExecutiveSummary
    detailed_analysis: Dict[str, Any] = Field(default_factory=dict)
    recommendations: List[Recommendation] = Field(default_factory=list)
    recommendations_source: str = "capability"
    next_steps: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def key_insights(
    themes: ThemesResult,
    sentiment: SentimentResult,
    conflicts: ConflictsResult,
    agreements: AgreementsResult,
) -> List[str]:
    insights = [f"Identified {len(themes.themes)} main discussion themes"]
    if sentiment.interpretation:
        insights.append(f"Overall sentiment: {sentiment.interpretation}")
    if conflicts.conflicts:
        insights.append(f"Found {len(conflicts.conflicts)} areas of disagreement")
    if agreements.agreements:
        insights.append(f"Found {len(agreements.agreements)} areas of consensus")
    return insights


def executive_summary(
    themes: ThemesResult,
    sentiment: SentimentResult,
    conflicts: ConflictsResult,
    agreements: AgreementsResult,
) -> ExecutiveSummary:
    return ExecutiveSummary(
        overall_sentiment=sentiment.overall,
        sentiment_interpretation=sentiment.interpretation,
        conflict_count=len(conflicts.conflicts),
        agreement_count=len(agreements.agreements),
        theme_count=len(themes.themes),
        top_themes=[item.theme for item in themes.themes[:5]],
        key_insights=key_insights(themes, sentiment, conflicts, agreements),
    )


def rule_based_recommendations(summary: ExecutiveSummary) -> List[Recommendation]:
    """Recommendations derived from counts alone, used when the capability is unavailable."""

    recommendations: List[Recommendation] = []
    if summary.conflict_count > 3:
        recommendations.append(
            Recommendation(
                type="conflict_resolution",
                priority="high",
                title="Address Key Disagreements",
                description="Several areas of disagreement emerged. Consider a focused session to explore them.",
                rationale=f"Found {summary.conflict_count} conflicts across tables",
            )
        )
    if summary.overall_sentiment < -0.2:
        recommendations.append(
            Recommendation(
                type="engagement",
                priority="medium",
                title="Improve Participant Engagement",
                description="Participants showed lower engagement. Try energizers or a change of format.",
                rationale=f"Overall sentiment was {summary.overall_sentiment:.2f}",
            )
        )
    if summary.theme_count < 3:
        recommendations.append(
            Recommendation(
                type="theme_development",
                priority="medium",
                title="Develop Discussion Depth",
                description="Few distinct themes emerged. Provide more specific prompts in the next round.",
                rationale=f"Only {summary.theme_count} main themes identified",
            )
        )
    return recommendations


def parse_recommendations(raw: str) -> List[Recommendation]:
    """Parse the capability's ``{"recommendations": [...]}`` answer; raises ``ValueError``."""

    data = json.loads(raw)
    if isinstance(data, Mapping):
        data = data.get("recommendations", [])
    if not isinstance(data, list):
        raise ValueError("recommendations must be a list")
    try:
        return [Recommendation.model_validate(item) for item in data if isinstance(item, Mapping)]
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def next_steps(summary: ExecutiveSummary, degraded: Optional[List[str]] = None) -> List[str]:
    steps = [
        "Share the key themes with all participants",
        "Schedule follow-up sessions on the most discussed topics",
    ]
    if summary.conflict_count:
        steps.append("Plan a focused conversation on the main points of disagreement")
    if summary.agreement_count:
        steps.append("Turn the areas of consensus into concrete actions")
    if degraded:
        steps.append(f"Re-run the analysis for: {', '.join(degraded)}")
    return steps


__all__ = [
    "ExecutiveSummary",
    "FacilitatorReport",
    "Recommendation",
    "executive_summary",
    "key_insights",
    "next_steps",
    "parse_recommendations",
    "rule_based_recommendations",
]
