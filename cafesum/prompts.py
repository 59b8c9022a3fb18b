"""Prompt templates for the analysis facets, chat and recommendations.

Templates are plain data. Callers receive a :class:`PromptTemplates` instance
explicitly; administrators' edits produce a new instance via :meth:`updated`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .data.models import FacetType


class FacetPrompt(BaseModel):
    title: str
    prompt: str
    keywords: List[str] = Field(default_factory=list)


def _default_facets() -> Dict[FacetType, FacetPrompt]:
    return {
        FacetType.CONFLICTS: FacetPrompt(
            title="Conflict Detection",
            prompt=(
                "Analyze the following World Café discussion transcripts and identify disagreements, "
                "opposing viewpoints, and tensions between participants. Rate severity from 0-1. "
                'Respond as {"conflicts": [{"location", "quote", "severity", "description"}]}.'
            ),
            keywords=["disagree", "oppose", "conflict", "wrong", "against", "but", "however", "dispute", "argue"],
        ),
        FacetType.AGREEMENTS: FacetPrompt(
            title="Agreement Detection",
            prompt=(
                "Analyze the following World Café discussion transcripts and identify areas of consensus, "
                "shared values, and common ground between participants. Rate strength from 0-1. "
                'Respond as {"agreements": [{"location", "quote", "strength", "description"}]}.'
            ),
            keywords=["agree", "yes", "exactly", "same", "support", "consensus", "together", "shared", "common"],
        ),
        FacetType.THEMES: FacetPrompt(
            title="Theme Extraction",
            prompt=(
                "Analyze the following World Café discussion transcripts and extract the main topics, "
                "recurring themes, and key discussion points with their frequency. "
                'Respond as {"themes": [{"theme", "frequency", "locations", "sentiment"}]} '
                "with sentiment between -1 and 1."
            ),
        ),
        FacetType.SENTIMENT: FacetPrompt(
            title="Sentiment Analysis",
            prompt=(
                "Analyze the emotional tone and participant engagement levels in the following World Café "
                "discussion transcripts. Assess the overall mood, enthusiasm, and emotional climate. "
                'Respond as {"overall", "by_location": {location: score}, "interpretation", "insights"} '
                "with scores between -1 and 1."
            ),
        ),
    }


_DEFAULT_SYSTEM = (
    "You are an expert facilitator and conversation analyst specializing in World Café methodology. "
    "Your task is to analyze discussion transcripts and provide insightful, actionable analysis.\n\n"
    "Please provide your response in valid JSON format based on the analysis type: {facet}\n\n"
    "Keep responses concise but insightful. If content is truncated or condensed, provide the best "
    "analysis possible with the available data."
)

_DEFAULT_CHAT = (
    "You are an AI assistant helping to explore and analyze a World Café session. The session involves "
    "multiple tables where participants discuss various topics.\n\n"
    "Use the session context below to answer questions about what was discussed at different tables, "
    "main themes, agreements and disagreements, and cross-table comparisons. Cite tables or speakers "
    "when possible. If asked about something not in the context, say so clearly.\n\n"
    "Session Context:\n{context}"
)

_DEFAULT_RECOMMENDATIONS = (
    "Based on this World Café session analysis, provide 3-5 specific, actionable recommendations for "
    "the facilitator.\n\nConflicts found: {conflicts}\nAgreements found: {agreements}\n"
    "Main themes: {themes}\nOverall sentiment: {sentiment} ({interpretation})\n\n"
    'Respond as {"recommendations": [{"type": "conflict_resolution|engagement|theme_development|facilitation", '
    '"priority": "high|medium|low", "title", "description", "rationale"}]}.'
)


def fill_template(template: str, **values: Any) -> str:
    """Substitute ``{name}`` placeholders, leaving every other brace untouched.

    Administrators edit templates and they routinely contain JSON examples;
    only the named placeholders are replaced.
    """

    for name, value in values.items():
        template = template.replace("{" + name + "}", str(value))
    return template


class PromptTemplates(BaseModel):
    facets: Dict[FacetType, FacetPrompt] = Field(default_factory=_default_facets)
    system: str = _DEFAULT_SYSTEM
    chat_system: str = _DEFAULT_CHAT
    recommendations: str = _DEFAULT_RECOMMENDATIONS

    def facet(self, facet: FacetType) -> FacetPrompt:
        return self.facets[facet]

    def system_prompt(self, facet: FacetType) -> str:
        entry = self.facets[facet]
        instructions = entry.prompt
        if entry.keywords:
            instructions += f"\nPhrases that often signal this: {', '.join(entry.keywords)}."
        return (
            f"{fill_template(self.system, facet=facet.value)}\n\n{instructions}\n\n"
            "Provide concise but insightful analysis in valid JSON format. "
            "Include relevant quotes and specific table references when possible."
        )

    def chat_prompt(self, context: str) -> str:
        return fill_template(self.chat_system, context=context)

    def recommendations_prompt(self, **values: Any) -> str:
        return fill_template(self.recommendations, **values)

    def user_prompt(self, facet: FacetType, corpus: str) -> str:
        return (
            f"Please analyze these World Café discussion transcripts:\n\n{corpus}\n\n"
            f"Focus on: {facet.value}"
        )

    def updated(self, overrides: Dict[str, Any]) -> "PromptTemplates":
        """Return a copy with ``overrides`` merged in; facet entries merge per field."""

        data = self.model_dump(mode="json")
        for facet_name, changes in (overrides.get("facets") or {}).items():
            data["facets"].setdefault(facet_name, {}).update(changes)
        for key in ("system", "chat_system", "recommendations"):
            if key in overrides:
                data[key] = overrides[key]
        return PromptTemplates.model_validate(data)


def load_prompts(path: Optional[Path] = None) -> PromptTemplates:
    """Default templates, with overrides from a JSON file when given."""

    templates = PromptTemplates()
    if path is None:
        return templates
    return templates.updated(json.loads(Path(path).read_text()))


__all__ = ["FacetPrompt", "PromptTemplates", "fill_template", "load_prompts"]
