"""Participation statistics computed locally from transcripts."""

from __future__ import annotations

from typing import Dict, List, Sequence

from pydantic import BaseModel, Field

from ...data.models import Transcript
from ..aggregation import group_by_table


class SpeakerStats(BaseModel):
    table_id: str
    speaker: str
    word_count: int = 0
    duration: float = 0.0


class ParticipationStats(BaseModel):
    total_tables: int = 0
    total_transcripts: int = 0
    average_transcript_length: float = 0.0
    tables_with_multiple_speakers: int = 0
    speaker_distribution: Dict[str, SpeakerStats] = Field(default_factory=dict)


class TableComparison(BaseModel):
    rank: int
    table_id: str
    participation_level: int
    transcript_count: int
    average_length: float


def transcript_length(transcript: Transcript) -> int:
    if transcript.text:
        return len(transcript.text)
    return sum(len(segment.text) for segment in transcript.speaker_segments)


def participation_stats(transcripts: Sequence[Transcript]) -> ParticipationStats:
    if not transcripts:
        return ParticipationStats()

    grouped = group_by_table(transcripts)
    multi_speaker_tables = 0
    distribution: Dict[str, SpeakerStats] = {}
    for table_id, table_transcripts in grouped.items():
        speakers = {s.speaker for t in table_transcripts for s in t.speaker_segments}
        if len(speakers) > 1:
            multi_speaker_tables += 1
        for transcript in table_transcripts:
            for segment in transcript.speaker_segments:
                key = f"Table{table_id}_Speaker{segment.speaker}"
                entry = distribution.setdefault(
                    key, SpeakerStats(table_id=table_id, speaker=segment.speaker)
                )
                entry.word_count += len(segment.text.split())
                entry.duration += segment.duration

    total_length = sum(transcript_length(t) for t in transcripts)
    return ParticipationStats(
        total_tables=len(grouped),
        total_transcripts=len(transcripts),
        average_transcript_length=total_length / len(transcripts),
        tables_with_multiple_speakers=multi_speaker_tables,
        speaker_distribution=distribution,
    )


def compare_tables(transcripts: Sequence[Transcript]) -> List[TableComparison]:
    """Tables ranked by combined transcript length, longest first."""

    rows = []
    for table_id, table_transcripts in group_by_table(transcripts).items():
        total = sum(transcript_length(t) for t in table_transcripts)
        rows.append((table_id, total, len(table_transcripts)))
    # group_by_table is already in natural id order, so equal totals keep that order.
    rows.sort(key=lambda row: row[1], reverse=True)
    return [
        TableComparison(
            rank=rank,
            table_id=table_id,
            participation_level=total,
            transcript_count=count,
            average_length=total / count,
        )
        for rank, (table_id, total, count) in enumerate(rows, start=1)
    ]


__all__ = [
    "ParticipationStats",
    "SpeakerStats",
    "TableComparison",
    "compare_tables",
    "participation_stats",
    "transcript_length",
]
