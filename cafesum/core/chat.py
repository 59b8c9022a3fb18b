"""Conversational querying over a cached session digest."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..data.models import SCHEMA_VERSION, AnalysisRecord, AnalysisScope, FacetType, Transcript
from ..data.storage import AnalysisStore
from ..logging import get_logger
from ..prompts import PromptTemplates
from ..services.completion.base import (
    CapabilityRateLimitError,
    CapabilitySizeLimitError,
    CompletionService,
    ExternalCapabilityError,
    bounded_submit,
)
from .aggregation import TranscriptAggregator
from .budget import (
    BudgetRefusal,
    ContextBudgetManager,
    CorpusSection,
    digest_sections,
    estimate_tokens,
)

LOGGER = get_logger(__name__)

CONTEXT_TRUNCATION_MARKER = (
    "\n\n[... Large session content truncated. Ask about specific tables for detailed analysis ...]"
)

TranscriptLoader = Callable[[str], Sequence[Transcript]]


class ChatReply(BaseModel):
    response: Optional[str] = None
    refused: bool = False
    reason: Optional[str] = None
    details: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)
    refusal: Optional[BudgetRefusal] = None
    digest_reused: bool = False
    context_truncated: bool = False


def truncate_context(context: str, max_tokens: int, keep_ratio: float) -> str:
    """Keep the head of ``context`` and mark the cut; a no-op when it already fits."""

    target_chars = max(max_tokens, 0) * 4
    if len(context) <= target_chars:
        return context
    keep = int(target_chars * keep_ratio) - len(CONTEXT_TRUNCATION_MARKER)
    return context[: max(keep, 0)] + CONTEXT_TRUNCATION_MARKER


class ChatContextCache:
    """Answers questions about a session from a digest built once and stored.

    The digest is not rebuilt when new transcripts arrive; call :meth:`refresh`
    to regenerate it.
    """

    def __init__(
        self,
        store: AnalysisStore,
        transcript_loader: TranscriptLoader,
        budget: ContextBudgetManager,
        prompts: PromptTemplates,
        completion: Optional[CompletionService],
        capability_id: str,
        max_response_tokens: int = 2_000,
        aggregator: Optional[TranscriptAggregator] = None,
        keep_ratio: float = 0.8,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.transcript_loader = transcript_loader
        self.budget = budget
        self.prompts = prompts
        self.completion = completion
        self.capability_id = capability_id
        self.max_response_tokens = max_response_tokens
        self.aggregator = aggregator or TranscriptAggregator()
        self.keep_ratio = keep_ratio
        self.timeout = timeout

    async def cached(self, session_id: str) -> Optional[AnalysisRecord]:
        return await asyncio.to_thread(
            self.store.find_one, session_id, FacetType.CHAT_SUMMARY, None, AnalysisScope.SESSION
        )

    async def refresh(self, session_id: str) -> Optional[AnalysisRecord]:
        """Build the digest from the session's transcripts and overwrite the stored one."""

        transcripts = await asyncio.to_thread(self.transcript_loader, session_id)
        if not transcripts:
            return None

        sections = [
            CorpusSection.from_aggregate(aggregate)
            for aggregate in self.aggregator.aggregate_by_table(transcripts)
        ]
        digest = digest_sections(sections, self.budget.policy)
        full_tokens = estimate_tokens(ContextBudgetManager.render_full(sections))
        LOGGER.info(
            "Built chat digest for session %s: %d chars from ~%d tokens of transcripts",
            session_id,
            len(digest),
            full_tokens,
        )
        return await asyncio.to_thread(
            self.store.upsert,
            session_id,
            None,
            FacetType.CHAT_SUMMARY,
            AnalysisScope.SESSION,
            {"digest": digest, "tables": [section.label for section in sections]},
            {
                "created_by": "auto_summary",
                "transcript_count": len(transcripts),
                "tokens_saved": max(full_tokens - estimate_tokens(digest), 0),
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "schema_version": SCHEMA_VERSION,
            },
        )

    def _system_prompt(self, digest: str) -> str:
        context = (
            f"{digest}\n\n[This is a condensed summary. For specific details, ask about "
            "particular tables or topics.]"
        )
        return self.prompts.chat_prompt(context)

    async def chat(self, session_id: str, message: str) -> ChatReply:
        record = await self.cached(session_id)
        reused = record is not None
        if record is None:
            record = await self.refresh(session_id)
        if record is None:
            return ChatReply(
                refused=True,
                reason="no_data",
                details=f"Session {session_id} has no transcripts yet.",
                suggestions=["Wait for recordings to finish transcribing, then ask again"],
            )

        tables = record.payload.get("tables", [])
        digest = record.payload.get("digest", "")
        available = self.budget.available_tokens(self.capability_id)
        system_prompt = self._system_prompt(digest)
        estimated = estimate_tokens(system_prompt + message)
        truncated = False

        if estimated > available:
            overhead = estimate_tokens(self._system_prompt("") + message)
            digest = truncate_context(digest, available - overhead, self.keep_ratio)
            system_prompt = self._system_prompt(digest)
            estimated = estimate_tokens(system_prompt + message)
            truncated = True
            LOGGER.info("Chat context for %s truncated to ~%d of %d tokens", session_id, estimated, available)

        if estimated > available:
            refusal = self.budget.refusal(tables, self.capability_id, estimated, available)
            LOGGER.warning("Chat for session %s refused: %s", session_id, refusal.message)
            return ChatReply(
                refused=True,
                reason="context_overflow",
                details=refusal.message,
                suggestions=refusal.suggestions,
                refusal=refusal,
                digest_reused=reused,
                context_truncated=truncated,
            )

        if self.completion is None:
            return self._failure("capability_error", "No completion backend is configured", reused)
        try:
            response = await bounded_submit(
                self.completion,
                system_prompt,
                message,
                self.capability_id,
                self.max_response_tokens,
                timeout=self.timeout,
                json_mode=False,
            )
        except CapabilityRateLimitError as exc:
            return self._failure("rate_limit", str(exc), reused, ["Wait 30 seconds and try again"])
        except CapabilitySizeLimitError as exc:
            return self._failure(
                "context_overflow",
                str(exc),
                reused,
                ["Ask about specific tables instead of the whole session"],
            )
        except ExternalCapabilityError as exc:
            return self._failure("capability_error", str(exc), reused)

        return ChatReply(response=response, digest_reused=reused, context_truncated=truncated)

    @staticmethod
    def _failure(
        reason: str, details: str, reused: bool, suggestions: Optional[List[str]] = None
    ) -> ChatReply:
        LOGGER.warning("Chat request failed (%s): %s", reason, details)
        return ChatReply(
            refused=True,
            reason=reason,
            details=details,
            suggestions=suggestions
            or [
                "Try rephrasing your question",
                "Be more specific about the table or topic you want to know about",
            ],
            digest_reused=reused,
        )


__all__ = ["ChatContextCache", "ChatReply", "CONTEXT_TRUNCATION_MARKER", "truncate_context"]
