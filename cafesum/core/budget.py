"""Fitting transcript corpora into a completion capability's context budget.

Sizes are estimated as ``ceil(characters / 4)``. This is an approximation of
real tokenizer output, not a count: English prose usually tokenizes a little
below the estimate, code and non-Latin scripts noticeably above it. The
``reserved_tokens`` margin is what absorbs the difference.

The ladder is evaluated top to bottom and the first level whose re-estimated
size fits is used:

``FULL``
    every table section verbatim.
``TRUNCATED``
    each table keeps a leading share of its content. Room is handed out to the
    shortest tables first, so the longest tables lose their tails first. Only
    tables that are actually cut carry the truncation marker.
``SUMMARIZED``
    an extractive digest per table: a capped leading excerpt and the most frequent
    non-stopword terms. Tried before a thin truncation, one where some cut table
    would keep fewer than ``min_section_chars``; the thin truncation is used only
    when the digest does not fit either.
``MINIMAL``
    counts only, plus an instruction to narrow the request.
``REFUSED``
    nothing fits; the outcome carries a :class:`BudgetRefusal` and nothing may be
    submitted.

Identical input always yields the identical outcome.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from ..config import Settings
from ..data.models import AggregateTranscript
from ..logging import get_logger

LOGGER = get_logger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n... [truncated]"
SECTION_SEPARATOR = "\n\n"

STOPWORDS = frozenset(
    """
    about above after again also among and another any are aren around because been before
    being below between both but can cannot could couldn did didn does doesn doing done down
    during each either else even ever every few for from further going gonna got had hadn has
    hasn have haven having her here hers herself him himself his how however into isn its
    itself just know like maybe might more most much must myself need never not now off once
    only other others our ours ourselves out over own really right said same say says shall
    she should shouldn since some something still such sure than that thats the their theirs
    them themselves then there these they thing things think this those though through thus
    too under until upon very want was wasn way well were weren what when where whether which
    while who whom whose why will with within without won would wouldn yeah yes yet you your
    yours yourself yourselves
    """.split()
)

_NON_WORD = re.compile(r"[^\w\s]")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def extract_keywords(text: str, limit: int) -> List[str]:
    """Most frequent non-stopword terms, ties broken by first appearance."""

    words = [
        word
        for word in _NON_WORD.sub(" ", text.lower()).split()
        if len(word) > 3 and word not in STOPWORDS and not word.isdigit()
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def cap_text(text: str, max_chars: int, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - len(suffix), 0)] + suffix


class LadderLevel(str, Enum):
    FULL = "full"
    TRUNCATED = "truncated"
    SUMMARIZED = "summarized"
    MINIMAL = "minimal"
    REFUSED = "refused"


@dataclass(frozen=True)
class CorpusSection:
    """One table's contribution to a corpus."""

    label: str
    content: str
    transcript_count: int = 1

    @property
    def header(self) -> str:
        return f"--- Table {self.label} ---"

    def render(self, content: Optional[str] = None) -> str:
        return f"{self.header}\n{self.content if content is None else content}"

    @classmethod
    def from_aggregate(cls, aggregate: AggregateTranscript) -> "CorpusSection":
        return cls(
            label=aggregate.table_id or "?",
            content=aggregate.text,
            transcript_count=aggregate.metadata.recording_count,
        )


class BudgetRefusal(BaseModel):
    message: str
    estimated: int
    available: int
    capability_id: str
    suggestions: List[str] = Field(default_factory=list)


class ContextOverflowError(RuntimeError):
    """Raised when a corpus cannot be represented within the budget."""

    def __init__(self, refusal: BudgetRefusal) -> None:
        super().__init__(refusal.message)
        self.refusal = refusal


@dataclass(frozen=True)
class BudgetOutcome:
    level: LadderLevel
    text: str
    estimated: int
    available: int
    capability_id: str
    original_estimate: int
    refusal: Optional[BudgetRefusal] = None

    @property
    def refused(self) -> bool:
        return self.level is LadderLevel.REFUSED

    def raise_for_refusal(self) -> None:
        if self.refusal is not None:
            raise ContextOverflowError(self.refusal)


@dataclass(frozen=True)
class BudgetPolicy:
    reserved_tokens: int = 3_000
    min_section_chars: int = 40
    excerpt_chars: int = 200
    keyword_count: int = 5
    table_digest_chars: int = 320
    total_digest_chars: int = 2_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "BudgetPolicy":
        return cls(
            reserved_tokens=settings.reserved_tokens,
            min_section_chars=settings.min_section_chars,
            excerpt_chars=settings.digest_excerpt_chars,
            keyword_count=settings.digest_keyword_count,
            table_digest_chars=settings.digest_table_chars,
            total_digest_chars=settings.digest_total_chars,
        )


def digest_sections(sections: Sequence[CorpusSection], policy: BudgetPolicy) -> str:
    """Extractive digest: leading excerpt and top terms per table, all capped."""

    lines = []
    for section in sections:
        flattened = " ".join(section.content.split())
        excerpt = cap_text(flattened, policy.excerpt_chars + 3)
        keywords = extract_keywords(section.content, policy.keyword_count)
        line = f"Table {section.label}: {excerpt} | Topics: {', '.join(keywords) or 'none'}"
        lines.append(cap_text(line, policy.table_digest_chars))
    return cap_text("\n".join(lines), policy.total_digest_chars)


def narrowing_suggestions(table_labels: Sequence[str], capability_id: str, limit: int) -> List[str]:
    suggestions = []
    if len(table_labels) > 1:
        suggestions.append("Analyse a single table instead of the whole session")
    if table_labels:
        suggestions.append(f"Ask about a specific table, e.g. 'What did Table {table_labels[0]} discuss?'")
    suggestions.append("Break the question into smaller, more specific parts")
    suggestions.append(
        f"Use a capability with a larger context window than {capability_id} ({limit} tokens)"
    )
    return suggestions


class ContextBudgetManager:
    """Chooses the representation of a corpus that fits a capability's budget."""

    def __init__(
        self,
        capability_limits: Mapping[str, int],
        policy: Optional[BudgetPolicy] = None,
        default_limit: int = 12_000,
    ) -> None:
        self.capability_limits = dict(capability_limits)
        self.policy = policy or BudgetPolicy()
        self.default_limit = default_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextBudgetManager":
        return cls(
            settings.capability_limits,
            BudgetPolicy.from_settings(settings),
            default_limit=settings.default_capability_limit,
        )

    def limit_for(self, capability_id: str) -> int:
        return self.capability_limits.get(capability_id, self.default_limit)

    def available_tokens(self, capability_id: str, overhead_text: str = "") -> int:
        """Tokens left for the corpus once the reserve and prompt overhead are taken."""

        return self.limit_for(capability_id) - self.policy.reserved_tokens - estimate_tokens(overhead_text)

    def refusal(
        self,
        table_labels: Sequence[str],
        capability_id: str,
        estimated: int,
        available: int,
    ) -> BudgetRefusal:
        return BudgetRefusal(
            message=(
                f"Content needs about {estimated} tokens but {capability_id} "
                f"can accept {max(available, 0)} for it."
            ),
            estimated=estimated,
            available=available,
            capability_id=capability_id,
            suggestions=narrowing_suggestions(table_labels, capability_id, self.limit_for(capability_id)),
        )

    def fit(
        self,
        sections: Sequence[CorpusSection],
        capability_id: str,
        overhead_text: str = "",
    ) -> BudgetOutcome:
        available = self.available_tokens(capability_id, overhead_text)
        full_text = self.render_full(sections)
        original = estimate_tokens(full_text)

        candidates = (
            (LadderLevel.FULL, lambda: full_text),
            (LadderLevel.TRUNCATED, lambda: self.render_truncated(sections, available)),
            (LadderLevel.SUMMARIZED, lambda: digest_sections(sections, self.policy)),
            (LadderLevel.TRUNCATED, lambda: self.render_truncated(sections, available, min_keep=1)),
            (LadderLevel.MINIMAL, lambda: self.render_minimal(sections)),
        )
        for level, render in candidates:
            text = render()
            if text is None:
                continue
            estimated = estimate_tokens(text)
            if estimated <= available:
                if level is not LadderLevel.FULL:
                    LOGGER.info(
                        "Corpus of ~%d tokens reduced to %s (~%d of %d tokens) for %s",
                        original,
                        level.value,
                        estimated,
                        available,
                        capability_id,
                    )
                return BudgetOutcome(level, text, estimated, available, capability_id, original)

        LOGGER.warning(
            "Corpus of ~%d tokens cannot fit %d available tokens for %s; refusing",
            original,
            available,
            capability_id,
        )
        refusal = self.refusal([s.label for s in sections], capability_id, original, available)
        return BudgetOutcome(
            LadderLevel.REFUSED, "", 0, available, capability_id, original, refusal=refusal
        )

    @staticmethod
    def render_full(sections: Sequence[CorpusSection]) -> str:
        return SECTION_SEPARATOR.join(section.render() for section in sections)

    @staticmethod
    def allot(sections: Sequence[CorpusSection], room: int) -> List[int]:
        """Characters of content each section keeps within ``room``.

        Sections are visited shortest first; a section stays whole while an equal
        share of what is left still covers it. From the first section that does
        not fit, it and every longer section are cut, each paying for a marker.
        """

        order = sorted(range(len(sections)), key=lambda i: (len(sections[i].content), i))
        allotment = [0] * len(sections)
        remaining = room
        for position, index in enumerate(order):
            left = len(order) - position
            length = len(sections[index].content)
            if length * left <= remaining:
                allotment[index] = length
                remaining -= length
                continue
            remaining -= len(TRUNCATION_MARKER) * left
            for offset, cut in enumerate(order[position:]):
                allotment[cut] = remaining // (left - offset)
                remaining -= allotment[cut]
            break
        return allotment

    def render_truncated(
        self,
        sections: Sequence[CorpusSection],
        available: int,
        min_keep: Optional[int] = None,
    ) -> Optional[str]:
        if not sections or available <= 0:
            return None
        min_keep = self.policy.min_section_chars if min_keep is None else min_keep
        fixed = sum(len(section.header) + 1 for section in sections)
        fixed += len(SECTION_SEPARATOR) * (len(sections) - 1)
        room = available * CHARS_PER_TOKEN - fixed
        if room <= 0:
            return None

        rendered = []
        for section, keep in zip(sections, self.allot(sections, room)):
            if keep >= len(section.content):
                rendered.append(section.render())
                continue
            if keep < max(min_keep, 1):
                return None
            rendered.append(section.render(section.content[:keep].rstrip() + TRUNCATION_MARKER))
        return SECTION_SEPARATOR.join(rendered)

    @staticmethod
    def render_minimal(sections: Sequence[CorpusSection]) -> str:
        transcripts = sum(section.transcript_count for section in sections)
        return (
            f"Session contains {len(sections)} tables and {transcripts} transcripts. "
            "The content is too large for detailed analysis at this scope; "
            "narrow the request to a single table or fewer recordings."
        )


__all__ = [
    "BudgetOutcome",
    "BudgetPolicy",
    "BudgetRefusal",
    "CHARS_PER_TOKEN",
    "ContextBudgetManager",
    "ContextOverflowError",
    "CorpusSection",
    "LadderLevel",
    "STOPWORDS",
    "TRUNCATION_MARKER",
    "cap_text",
    "digest_sections",
    "estimate_tokens",
    "extract_keywords",
    "narrowing_suggestions",
]
