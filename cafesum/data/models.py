"""Data models used by cafesum."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field

SCHEMA_VERSION = "1.0"


class RecordingStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "RecordingStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    RecordingStatus.UPLOADED: {RecordingStatus.PROCESSING, RecordingStatus.FAILED},
    RecordingStatus.PROCESSING: {RecordingStatus.COMPLETED, RecordingStatus.FAILED},
    RecordingStatus.COMPLETED: set(),
    RecordingStatus.FAILED: set(),
}


class InvalidStatusTransition(ValueError):
    """Raised when a recording would move backwards in its lifecycle."""


class Recording(BaseModel):
    id: str
    table_id: str
    session_id: str
    status: RecordingStatus = RecordingStatus.UPLOADED
    duration_seconds: float = 0.0
    created_at: datetime = Field(default_factory=datetime.now)

    def advance(self, status: RecordingStatus) -> "Recording":
        if status == self.status:
            return self
        if not self.status.can_transition_to(status):
            raise InvalidStatusTransition(
                f"Recording {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status})


class SpeakerSegment(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    speaker: str
    text: str = Field(default="", validation_alias=AliasChoices("text", "transcript"))
    start: float = 0.0
    end: float = 0.0
    confidence: Optional[float] = None

    @property
    def duration(self) -> float:
        return max(self.end - self.start, 0.0)


class Transcript(BaseModel):
    """Text derived from one completed recording. Immutable once created."""

    model_config = {"frozen": True, "populate_by_name": True, "coerce_numbers_to_str": True}

    id: str
    recording_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recording_id", "recordingId")
    )
    table_id: str = Field(validation_alias=AliasChoices("table_id", "tableId"))
    session_id: str = Field(validation_alias=AliasChoices("session_id", "sessionId"))
    text: str = ""
    speaker_segments: List[SpeakerSegment] = Field(
        default_factory=list,
        validation_alias=AliasChoices("speaker_segments", "speakerSegments"),
    )
    confidence_score: float = Field(
        default=0.0, validation_alias=AliasChoices("confidence_score", "confidenceScore")
    )
    language: str = "en"
    duration_seconds: float = Field(
        default=0.0, validation_alias=AliasChoices("duration_seconds", "durationSeconds")
    )
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))

    @property
    def speaker_count(self) -> int:
        return len({segment.speaker for segment in self.speaker_segments})

    def rendered_lines(self) -> List[str]:
        """Speaker-labelled lines when segments exist, otherwise the raw text."""

        if self.speaker_segments:
            return [f"Speaker {s.speaker}: {s.text}" for s in self.speaker_segments]
        return [self.text] if self.text else []


@dataclass
class LineOrigin:
    """Where one line of an aggregate transcript came from."""

    line_index: int
    recording_index: int
    recording_id: Optional[str]
    recorded_at: datetime
    speaker: Optional[str] = None


@dataclass
class AggregateMetadata:
    recording_count: int = 0
    total_duration: float = 0.0
    quality_scores: List[float] = field(default_factory=list)
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class AggregateTranscript:
    table_id: Optional[str]
    text: str
    line_origins: List[LineOrigin] = field(default_factory=list)
    metadata: AggregateMetadata = field(default_factory=AggregateMetadata)

    @classmethod
    def empty(cls) -> "AggregateTranscript":
        return cls(table_id=None, text="")

    @property
    def is_empty(self) -> bool:
        return self.metadata.recording_count == 0


class FacetType(str, Enum):
    SUMMARY = "summary"
    THEMES = "themes"
    SENTIMENT = "sentiment"
    CONFLICTS = "conflicts"
    AGREEMENTS = "agreements"
    CHAT_SUMMARY = "chat_summary"


ANALYSIS_FACETS = (
    FacetType.CONFLICTS,
    FacetType.AGREEMENTS,
    FacetType.THEMES,
    FacetType.SENTIMENT,
)


class AnalysisScope(str, Enum):
    SESSION = "session"
    TABLE = "table"


class AnalysisRecord(BaseModel):
    id: str
    session_id: str
    table_id: Optional[str] = None
    facet_type: FacetType
    scope: AnalysisScope
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    updated_at: float


__all__ = [
    "ANALYSIS_FACETS",
    "AggregateMetadata",
    "AggregateTranscript",
    "AnalysisRecord",
    "AnalysisScope",
    "FacetType",
    "InvalidStatusTransition",
    "LineOrigin",
    "Recording",
    "RecordingStatus",
    "SCHEMA_VERSION",
    "SpeakerSegment",
    "Transcript",
]
