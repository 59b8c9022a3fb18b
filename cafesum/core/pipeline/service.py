"""Entry points used by outer layers: analysis generation, chat and reporting."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from ...config import Settings, get_settings
from ...data.facets import (
    AgreementsResult,
    ConflictsResult,
    FacetResult,
    SentimentResult,
    ThemesResult,
)
from ...data.models import (
    ANALYSIS_FACETS,
    SCHEMA_VERSION,
    AnalysisRecord,
    AnalysisScope,
    FacetType,
    Recording,
    RecordingStatus,
    Transcript,
)
from ...data.storage import AnalysisStore, TranscriptStore
from ...logging import get_logger
from ...prompts import PromptTemplates, load_prompts
from ...services.completion.base import CompletionService, ExternalCapabilityError, bounded_submit
from ...services.factory import resolve_completion_backend
from ..aggregation import TranscriptAggregator
from ..budget import ContextBudgetManager, CorpusSection
from ..chat import ChatContextCache, ChatReply
from .orchestrator import AnalysisOrchestrator, AnalysisOutcome, AnalysisRequest, strip_code_fences
from .report import (
    ExecutiveSummary,
    FacilitatorReport,
    Recommendation,
    executive_summary,
    key_insights,
    next_steps,
    parse_recommendations,
    rule_based_recommendations,
)

LOGGER = get_logger(__name__)

ResultT = TypeVar("ResultT", bound=FacetResult)
FacetArg = Union[FacetType, str]

_RECOMMENDATIONS_SYSTEM = (
    "You are an expert World Café facilitator. Provide practical, actionable recommendations "
    "in valid JSON format."
)


class InputValidationError(ValueError):
    """Raised when the requested scope has nothing to analyse."""


@dataclass
class AnalysisResult:
    session_id: Optional[str]
    scope: AnalysisScope
    table_id: Optional[str] = None
    status: str = "completed"
    message: Optional[str] = None
    facets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    records: Dict[str, str] = field(default_factory=dict)
    participation_stats: Dict[str, Any] = field(default_factory=dict)
    cross_table_comparison: List[Dict[str, Any]] = field(default_factory=list)
    degraded_facets: List[str] = field(default_factory=list)
    generated_at: Optional[datetime] = None

    @property
    def no_data(self) -> bool:
        return self.status == "no_data"

    @classmethod
    def empty(
        cls, session_id: Optional[str], scope: AnalysisScope, table_id: Optional[str], message: str
    ) -> "AnalysisResult":
        return cls(session_id=session_id, scope=scope, table_id=table_id, status="no_data", message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "scope": self.scope.value,
            "table_id": self.table_id,
            "status": self.status,
            "message": self.message,
            "facets": self.facets,
            "records": self.records,
            "participation_stats": self.participation_stats,
            "cross_table_comparison": self.cross_table_comparison,
            "degraded_facets": self.degraded_facets,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }


def _facet_result(outcome: AnalysisOutcome, facet: FacetType, schema: Type[ResultT]) -> ResultT:
    facet_outcome = outcome.facets.get(facet)
    if facet_outcome is None or not isinstance(facet_outcome.result, schema):
        return schema()
    return facet_outcome.result


def _stored_result(records: Mapping[FacetType, AnalysisRecord], facet: FacetType, schema: Type[ResultT]) -> ResultT:
    record = records.get(facet)
    return schema.model_validate(record.payload) if record else schema()


def _normalise_facets(facets: Optional[Sequence[FacetArg]]) -> Tuple[FacetType, ...]:
    if not facets:
        return ANALYSIS_FACETS
    return tuple(FacetType(facet) for facet in facets)


class AnalysisService:
    """Coordinates stores, orchestrator and chat cache for one database."""

    def __init__(
        self,
        transcripts: TranscriptStore,
        analyses: AnalysisStore,
        orchestrator: AnalysisOrchestrator,
        chat_cache: ChatContextCache,
        aggregator: Optional[TranscriptAggregator] = None,
    ) -> None:
        self.transcripts = transcripts
        self.analyses = analyses
        self.orchestrator = orchestrator
        self.chat_cache = chat_cache
        self.aggregator = aggregator or TranscriptAggregator()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        completion: Optional[CompletionService] = None,
        backend: Optional[str] = None,
        prompts: Optional[PromptTemplates] = None,
    ) -> "AnalysisService":
        settings = settings or get_settings()
        if completion is None:
            completion = resolve_completion_backend(backend or settings.completion_backend)
        prompts = prompts or load_prompts(settings.prompts_path)

        transcripts = TranscriptStore(settings.database_path)
        transcripts.initialize()
        analyses = AnalysisStore(settings.database_path)
        analyses.initialize()

        budget = ContextBudgetManager.from_settings(settings)
        aggregator = TranscriptAggregator()
        orchestrator = AnalysisOrchestrator(
            completion,
            budget,
            prompts,
            settings.capability_id,
            max_response_tokens=settings.max_response_tokens,
            timeout=settings.completion_timeout,
        )
        chat_cache = ChatContextCache(
            analyses,
            transcripts.fetch_session_transcripts,
            budget,
            prompts,
            completion,
            settings.capability_id,
            max_response_tokens=settings.max_response_tokens,
            aggregator=aggregator,
            keep_ratio=settings.chat_keep_ratio,
            timeout=settings.completion_timeout,
        )
        return cls(transcripts, analyses, orchestrator, chat_cache, aggregator)

    # Ingestion -----------------------------------------------------------------

    def import_transcripts(self, items: Iterable[Mapping[str, Any]]) -> List[Transcript]:
        """Store transcripts from the transcription capability, completing their recordings."""

        imported: List[Transcript] = []
        for item in items:
            transcript = Transcript.model_validate(item)
            recording_id = transcript.recording_id or transcript.id
            if self.transcripts.fetch_recording(recording_id) is None:
                self.transcripts.save_recording(
                    Recording(
                        id=recording_id,
                        table_id=transcript.table_id,
                        session_id=transcript.session_id,
                        duration_seconds=transcript.duration_seconds,
                        created_at=transcript.created_at,
                    )
                )
            recording = self.transcripts.fetch_recording(recording_id)
            if recording is not None and recording.status is RecordingStatus.UPLOADED:
                self.transcripts.update_recording_status(recording_id, RecordingStatus.PROCESSING)
            self.transcripts.update_recording_status(recording_id, RecordingStatus.COMPLETED)
            transcript = transcript.model_copy(update={"recording_id": recording_id})
            self.transcripts.save_transcript(transcript)
            imported.append(transcript)
        LOGGER.info("Imported %d transcripts", len(imported))
        return imported

    # Analysis ------------------------------------------------------------------

    async def _session_scope(self, session_id: str) -> Tuple[List[Transcript], List[CorpusSection]]:
        transcripts = await asyncio.to_thread(self.transcripts.fetch_session_transcripts, session_id)
        if not transcripts:
            raise InputValidationError(f"No transcripts found for session {session_id}")
        sections = [
            CorpusSection.from_aggregate(aggregate)
            for aggregate in self.aggregator.aggregate_by_table(transcripts)
        ]
        return transcripts, sections

    async def _table_scope(self, table_id: str) -> Tuple[str, List[Transcript], List[CorpusSection]]:
        transcripts = await asyncio.to_thread(self.transcripts.fetch_table_transcripts, table_id)
        if not transcripts:
            raise InputValidationError(f"No transcripts found for table {table_id}")
        # A table belongs to one session; keep the most recently recorded one if ids were reused.
        session_id = transcripts[-1].session_id
        transcripts = [t for t in transcripts if t.session_id == session_id]
        section = CorpusSection.from_aggregate(self.aggregator.aggregate(transcripts))
        return session_id, transcripts, [section]

    async def generate_session_analysis(
        self, session_id: str, facets: Optional[Sequence[FacetArg]] = None
    ) -> AnalysisResult:
        try:
            transcripts, sections = await self._session_scope(session_id)
        except InputValidationError as exc:
            LOGGER.info("%s; skipping analysis", exc)
            return AnalysisResult.empty(session_id, AnalysisScope.SESSION, None, str(exc))
        return await self._analyse(
            session_id, AnalysisScope.SESSION, None, transcripts, sections, _normalise_facets(facets)
        )

    async def generate_table_analysis(
        self, table_id: str, facets: Optional[Sequence[FacetArg]] = None
    ) -> AnalysisResult:
        try:
            session_id, transcripts, sections = await self._table_scope(table_id)
        except InputValidationError as exc:
            LOGGER.info("%s; skipping analysis", exc)
            return AnalysisResult.empty(None, AnalysisScope.TABLE, table_id, str(exc))
        return await self._analyse(
            session_id, AnalysisScope.TABLE, table_id, transcripts, sections, _normalise_facets(facets)
        )

    async def _analyse(
        self,
        session_id: str,
        scope: AnalysisScope,
        table_id: Optional[str],
        transcripts: Sequence[Transcript],
        sections: Sequence[CorpusSection],
        facets: Sequence[FacetType],
    ) -> AnalysisResult:
        outcome = await self.orchestrator.run(
            AnalysisRequest(
                session_id=session_id,
                scope=scope,
                sections=sections,
                transcripts=transcripts,
                table_id=table_id,
                facets=facets,
            )
        )
        metadata = {
            "transcript_count": len(transcripts),
            "generated_at": outcome.generated_at.isoformat(),
            "schema_version": SCHEMA_VERSION,
        }

        result = AnalysisResult(
            session_id=session_id,
            scope=scope,
            table_id=table_id,
            participation_stats=outcome.participation.model_dump(mode="json"),
            cross_table_comparison=[row.model_dump(mode="json") for row in outcome.comparison],
            degraded_facets=[facet.value for facet in outcome.degraded_facets],
            generated_at=outcome.generated_at,
        )
        for facet, facet_outcome in outcome.facets.items():
            payload = facet_outcome.to_payload()
            record = await asyncio.to_thread(
                self.analyses.upsert,
                session_id,
                table_id,
                facet,
                scope,
                payload,
                {**metadata, "degraded": facet_outcome.degraded},
            )
            result.facets[facet.value] = payload
            result.records[facet.value] = record.id

        summary = await asyncio.to_thread(
            self.analyses.upsert,
            session_id,
            table_id,
            FacetType.SUMMARY,
            scope,
            self._summary_payload(outcome, len(transcripts)),
            metadata,
        )
        result.records[FacetType.SUMMARY.value] = summary.id
        if result.degraded_facets:
            LOGGER.warning(
                "%s analysis for %s finished with degraded facets: %s",
                scope.value,
                table_id or session_id,
                ", ".join(result.degraded_facets),
            )
        return result

    @staticmethod
    def _summary_payload(outcome: AnalysisOutcome, transcript_count: int) -> Dict[str, Any]:
        insights = key_insights(
            _facet_result(outcome, FacetType.THEMES, ThemesResult),
            _facet_result(outcome, FacetType.SENTIMENT, SentimentResult),
            _facet_result(outcome, FacetType.CONFLICTS, ConflictsResult),
            _facet_result(outcome, FacetType.AGREEMENTS, AgreementsResult),
        )
        return {
            "summary": (
                f"Analysis of {transcript_count} transcripts across "
                f"{outcome.participation.total_tables} tables"
            ),
            "key_insights": insights,
            "participation_stats": outcome.participation.model_dump(mode="json"),
            "cross_table_comparison": [row.model_dump(mode="json") for row in outcome.comparison],
            "degraded_facets": [facet.value for facet in outcome.degraded_facets],
        }

    # Chat ----------------------------------------------------------------------

    async def chat(self, session_id: str, message: str) -> ChatReply:
        return await self.chat_cache.chat(session_id, message)

    async def refresh_digest(self, session_id: str) -> Optional[AnalysisRecord]:
        return await self.chat_cache.refresh(session_id)

    # Reporting -----------------------------------------------------------------

    async def generate_report(self, session_id: str) -> FacilitatorReport:
        """Facilitator report from the stored session analysis, generating it when missing."""

        records = await self._session_records(session_id)
        if any(facet not in records for facet in ANALYSIS_FACETS):
            result = await self.generate_session_analysis(session_id)
            if result.no_data:
                return FacilitatorReport(
                    session_id=session_id,
                    status="no_data",
                    message=result.message,
                    executive_summary=ExecutiveSummary(),
                    recommendations_source="none",
                )
            records = await self._session_records(session_id)

        summary = executive_summary(
            _stored_result(records, FacetType.THEMES, ThemesResult),
            _stored_result(records, FacetType.SENTIMENT, SentimentResult),
            _stored_result(records, FacetType.CONFLICTS, ConflictsResult),
            _stored_result(records, FacetType.AGREEMENTS, AgreementsResult),
        )
        recommendations, source = await self._recommendations(summary)
        degraded = [facet.value for facet in ANALYSIS_FACETS if records[facet].payload.get("degraded")]
        return FacilitatorReport(
            session_id=session_id,
            executive_summary=summary,
            detailed_analysis={facet.value: record.payload for facet, record in records.items()},
            recommendations=recommendations,
            recommendations_source=source,
            next_steps=next_steps(summary, degraded),
        )

    async def _session_records(self, session_id: str) -> Dict[FacetType, AnalysisRecord]:
        found = await asyncio.to_thread(
            self.analyses.find, session_id, None, None, AnalysisScope.SESSION
        )
        return {record.facet_type: record for record in found if record.facet_type in ANALYSIS_FACETS}

    async def _recommendations(self, summary: ExecutiveSummary) -> Tuple[List[Recommendation], str]:
        completion = self.orchestrator.completion
        if completion is None:
            return rule_based_recommendations(summary), "rules"

        prompt = self.orchestrator.prompts.recommendations_prompt(
            conflicts=summary.conflict_count,
            agreements=summary.agreement_count,
            themes=", ".join(summary.top_themes) or "none",
            sentiment=f"{summary.overall_sentiment:.2f}",
            interpretation=summary.sentiment_interpretation or "unknown",
        )
        try:
            raw = await bounded_submit(
                completion,
                _RECOMMENDATIONS_SYSTEM,
                prompt,
                self.orchestrator.capability_id,
                self.orchestrator.max_response_tokens,
                timeout=self.orchestrator.timeout,
            )
            recommendations = parse_recommendations(strip_code_fences(raw))
        except (ExternalCapabilityError, ValueError) as exc:
            LOGGER.warning("Falling back to rule-based recommendations: %s", exc)
            return rule_based_recommendations(summary), "rules"
        if not recommendations:
            return rule_based_recommendations(summary), "rules"
        return recommendations, "capability"


__all__ = ["AnalysisResult", "AnalysisService", "InputValidationError"]
