"""Analysis orchestrator running the facets concurrently against a completion service."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ...data.facets import FacetResult, fallback_result, parse_facet_payload
from ...data.models import ANALYSIS_FACETS, AnalysisScope, FacetType, Transcript
from ...logging import get_logger
from ...prompts import PromptTemplates
from ...services.completion.base import (
    CompletionService,
    ExternalCapabilityError,
    MalformedResponseError,
    bounded_submit,
)
from ..budget import ContextBudgetManager, ContextOverflowError, CorpusSection, LadderLevel
from .statistics import ParticipationStats, TableComparison, compare_tables, participation_stats

LOGGER = get_logger(__name__)


@dataclass
class AnalysisRequest:
    session_id: str
    scope: AnalysisScope
    sections: Sequence[CorpusSection]
    transcripts: Sequence[Transcript]
    table_id: Optional[str] = None
    facets: Sequence[FacetType] = ANALYSIS_FACETS


@dataclass
class FacetOutcome:
    facet: FacetType
    result: FacetResult
    degraded: bool = False
    note: Optional[str] = None
    level: Optional[LadderLevel] = None
    suggestions: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.result.model_dump(mode="json")
        payload["degraded"] = self.degraded
        payload["note"] = self.note
        payload["ladder_level"] = self.level.value if self.level else None
        if self.suggestions:
            payload["suggestions"] = list(self.suggestions)
        return payload


@dataclass
class AnalysisOutcome:
    session_id: str
    scope: AnalysisScope
    table_id: Optional[str]
    facets: Dict[FacetType, FacetOutcome]
    participation: ParticipationStats
    comparison: List[TableComparison]
    generated_at: datetime

    @property
    def degraded_facets(self) -> List[FacetType]:
        return [facet for facet, outcome in self.facets.items() if outcome.degraded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "scope": self.scope.value,
            "table_id": self.table_id,
            "facets": {facet.value: outcome.to_payload() for facet, outcome in self.facets.items()},
            "participation_stats": self.participation.model_dump(mode="json"),
            "cross_table_comparison": [row.model_dump(mode="json") for row in self.comparison],
            "generated_at": self.generated_at.isoformat(),
        }


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class AnalysisOrchestrator:
    """Fans the requested facets out concurrently and joins them once all have settled."""

    def __init__(
        self,
        completion: Optional[CompletionService],
        budget: ContextBudgetManager,
        prompts: PromptTemplates,
        capability_id: str,
        max_response_tokens: int = 2_000,
        timeout: Optional[float] = None,
    ) -> None:
        self.completion = completion
        self.budget = budget
        self.prompts = prompts
        self.capability_id = capability_id
        self.max_response_tokens = max_response_tokens
        self.timeout = timeout

    async def run(self, request: AnalysisRequest) -> AnalysisOutcome:
        facets = list(dict.fromkeys(request.facets))
        unsupported = [facet for facet in facets if facet not in ANALYSIS_FACETS]
        if unsupported:
            raise ValueError(f"Unsupported analysis facets: {[f.value for f in unsupported]}")

        LOGGER.info(
            "Running %s analysis for %s (%d facets, %d sections)",
            request.scope.value,
            request.table_id or request.session_id,
            len(facets),
            len(request.sections),
        )
        settled = await asyncio.gather(
            *(self._run_facet(facet, request.sections) for facet in facets)
        )
        return AnalysisOutcome(
            session_id=request.session_id,
            scope=request.scope,
            table_id=request.table_id,
            facets={outcome.facet: outcome for outcome in settled},
            participation=participation_stats(request.transcripts),
            comparison=compare_tables(request.transcripts),
            generated_at=datetime.now(timezone.utc),
        )

    async def _run_facet(self, facet: FacetType, sections: Sequence[CorpusSection]) -> FacetOutcome:
        system_prompt = self.prompts.system_prompt(facet)
        overhead = system_prompt + self.prompts.user_prompt(facet, "")
        budgeted = self.budget.fit(sections, self.capability_id, overhead_text=overhead)

        try:
            budgeted.raise_for_refusal()
            if self.completion is None:
                raise ExternalCapabilityError("No completion backend is configured")
            raw = await bounded_submit(
                self.completion,
                system_prompt,
                self.prompts.user_prompt(facet, budgeted.text),
                self.capability_id,
                self.max_response_tokens,
                timeout=self.timeout,
            )
            result = self._parse(facet, raw)
        except ContextOverflowError as exc:
            return self._fallback(facet, f"Analysis skipped: {exc}", budgeted.level, exc.refusal.suggestions)
        except ExternalCapabilityError as exc:
            return self._fallback(
                facet, f"Analysis unavailable ({type(exc).__name__}): {exc}", budgeted.level
            )
        except Exception as exc:  # pragma: no cover
            LOGGER.exception("Unexpected failure in %s facet", facet.value)
            return self._fallback(facet, f"Analysis failed: {exc}", budgeted.level)

        note = None
        if budgeted.level is not LadderLevel.FULL:
            note = f"Based on {budgeted.level.value} transcript content"
        return FacetOutcome(facet=facet, result=result, note=note, level=budgeted.level)

    @staticmethod
    def _parse(facet: FacetType, raw: str) -> FacetResult:
        try:
            data = json.loads(strip_code_fences(raw))
            return parse_facet_payload(facet, data)
        except (ValueError, ValidationError) as exc:
            raise MalformedResponseError(f"{facet.value} response could not be parsed: {exc}") from exc

    @staticmethod
    def _fallback(
        facet: FacetType,
        note: str,
        level: Optional[LadderLevel],
        suggestions: Sequence[str] = (),
    ) -> FacetOutcome:
        LOGGER.warning("Facet %s degraded: %s", facet.value, note)
        return FacetOutcome(
            facet=facet,
            result=fallback_result(facet, note),
            degraded=True,
            note=note,
            level=level,
            suggestions=list(suggestions),
        )


__all__ = ["AnalysisOrchestrator", "AnalysisOutcome", "AnalysisRequest", "FacetOutcome", "strip_code_fences"]
