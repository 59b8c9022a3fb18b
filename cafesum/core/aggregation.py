"""Merge per-recording transcripts into one chronological narrative per table."""

from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Dict, Iterable, List, Sequence, Tuple

from ..data.models import (
    AggregateMetadata,
    AggregateTranscript,
    LineOrigin,
    Transcript,
)
from ..logging import get_logger

LOGGER = get_logger(__name__)

RECORDING_BREAK = "--- [Recording Break] ---"


def _chronological_key(transcript: Transcript) -> Tuple:
    # Identical timestamps fall back to the id so the order never depends on input order.
    return (transcript.created_at, transcript.id)


def table_sort_key(table_id: str) -> Tuple[int, object]:
    """Numeric table ids sort numerically, everything else lexically after them."""

    return (0, int(table_id)) if table_id.isdigit() else (1, table_id)


def _recording_duration(transcript: Transcript) -> float:
    if transcript.duration_seconds:
        return transcript.duration_seconds
    return max((segment.end for segment in transcript.speaker_segments), default=0.0)


def group_by_table(transcripts: Iterable[Transcript]) -> Dict[str, List[Transcript]]:
    grouped: Dict[str, List[Transcript]] = defaultdict(list)
    for transcript in transcripts:
        grouped[transcript.table_id].append(transcript)
    return {table_id: grouped[table_id] for table_id in sorted(grouped, key=table_sort_key)}


class TranscriptAggregator:
    """Builds the aggregate transcript for a table."""

    def __init__(self, break_marker: str = RECORDING_BREAK) -> None:
        self.break_marker = break_marker

    def aggregate(self, transcripts: Sequence[Transcript]) -> AggregateTranscript:
        if not transcripts:
            return AggregateTranscript.empty()

        ordered = sorted(transcripts, key=_chronological_key)
        table_ids = {t.table_id for t in ordered}
        if len(table_ids) > 1:
            LOGGER.warning("Aggregating transcripts from several tables: %s", sorted(table_ids))

        blocks: List[str] = []
        origins: List[LineOrigin] = []
        for recording_index, transcript in enumerate(ordered):
            lines = transcript.rendered_lines()
            speakers = [s.speaker for s in transcript.speaker_segments] or [None] * len(lines)
            for line, speaker in zip(lines, speakers):
                origins.append(
                    LineOrigin(
                        line_index=len(origins),
                        recording_index=recording_index,
                        recording_id=transcript.recording_id,
                        recorded_at=transcript.created_at,
                        speaker=speaker,
                    )
                )
            # Silent recordings still count in the metadata but add no block.
            if lines:
                blocks.append("\n".join(lines))

        separator = f"\n\n{self.break_marker}\n\n"
        ends = [t.created_at + timedelta(seconds=_recording_duration(t)) for t in ordered]
        metadata = AggregateMetadata(
            recording_count=len(ordered),
            total_duration=sum(_recording_duration(t) for t in ordered),
            quality_scores=[t.confidence_score for t in ordered],
            start=ordered[0].created_at,
            end=max(ends),
        )
        return AggregateTranscript(
            table_id=ordered[0].table_id,
            text=separator.join(blocks),
            line_origins=origins,
            metadata=metadata,
        )

    def aggregate_by_table(self, transcripts: Iterable[Transcript]) -> List[AggregateTranscript]:
        """One aggregate per table, tables in natural id order."""

        return [self.aggregate(group) for group in group_by_table(transcripts).values()]


__all__ = [
    "RECORDING_BREAK",
    "TranscriptAggregator",
    "group_by_table",
    "table_sort_key",
]
