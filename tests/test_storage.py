import sqlite3
from datetime import datetime

import pytest

from cafesum.data.models import (
    AnalysisScope,
    FacetType,
    InvalidStatusTransition,
    Recording,
    RecordingStatus,
    SpeakerSegment,
    Transcript,
)
from cafesum.data.storage import AnalysisStore, PersistenceError, TranscriptStore


@pytest.fixture()
def analysis_store(tmp_path):
    store = AnalysisStore(tmp_path / "cafesum.db")
    store.initialize()
    return store


@pytest.fixture()
def transcript_store(tmp_path):
    store = TranscriptStore(tmp_path / "cafesum.db")
    store.initialize()
    return store


def test_upsert_keeps_one_row_per_key(tmp_path, analysis_store):
    first = analysis_store.upsert(
        "session-1", None, FacetType.THEMES, AnalysisScope.SESSION, {"themes": ["old"]}
    )
    second = analysis_store.upsert(
        "session-1", None, FacetType.THEMES, AnalysisScope.SESSION, {"themes": ["new"]}, {"run": 2}
    )

    with sqlite3.connect(tmp_path / "cafesum.db") as conn:
        count = conn.execute(
            "SELECT COUNT(*) FROM analyses WHERE session_id = ?", ("session-1",)
        ).fetchone()[0]

    assert count == 1
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.updated_at > first.updated_at
    assert second.payload == {"themes": ["new"]}
    assert second.metadata == {"run": 2}


def test_session_and_table_rows_are_distinct_keys(analysis_store):
    analysis_store.upsert("s", None, FacetType.SENTIMENT, AnalysisScope.SESSION, {"overall": 0.1})
    analysis_store.upsert("s", "1", FacetType.SENTIMENT, AnalysisScope.TABLE, {"overall": 0.5})
    analysis_store.upsert("s", "2", FacetType.SENTIMENT, AnalysisScope.TABLE, {"overall": -0.2})

    assert analysis_store.count("s") == 3
    table_row = analysis_store.find_one("s", FacetType.SENTIMENT, "1", AnalysisScope.TABLE)
    assert table_row is not None
    assert table_row.table_id == "1"
    session_row = analysis_store.find_one("s", FacetType.SENTIMENT)
    assert session_row is not None
    assert session_row.table_id is None
    assert session_row.payload == {"overall": 0.1}


def test_find_filters(analysis_store):
    analysis_store.upsert("s", None, FacetType.THEMES, AnalysisScope.SESSION, {})
    analysis_store.upsert("s", None, FacetType.CONFLICTS, AnalysisScope.SESSION, {})
    analysis_store.upsert("s", "3", FacetType.THEMES, AnalysisScope.TABLE, {})
    analysis_store.upsert("other", None, FacetType.THEMES, AnalysisScope.SESSION, {})

    assert len(analysis_store.find("s")) == 3
    assert {r.facet_type for r in analysis_store.find("s", facet_type=FacetType.THEMES)} == {FacetType.THEMES}
    assert len(analysis_store.find("s", facet_type=FacetType.THEMES)) == 2
    assert [r.table_id for r in analysis_store.find("s", table_id="3")] == ["3"]
    assert len(analysis_store.find("s", table_id=None)) == 2
    assert len(analysis_store.find("s", scope=AnalysisScope.TABLE)) == 1
    assert analysis_store.find("missing") == []
    assert analysis_store.find_one("s", FacetType.AGREEMENTS) is None


def test_find_returns_most_recent_first(analysis_store):
    analysis_store.upsert("s", None, FacetType.THEMES, AnalysisScope.SESSION, {})
    analysis_store.upsert("s", None, FacetType.SENTIMENT, AnalysisScope.SESSION, {})
    analysis_store.upsert("s", None, FacetType.THEMES, AnalysisScope.SESSION, {"again": True})

    facets = [record.facet_type for record in analysis_store.find("s")]
    assert facets == [FacetType.THEMES, FacetType.SENTIMENT]


def test_database_errors_surface_as_persistence_error(tmp_path):
    store = AnalysisStore(tmp_path / "uninitialised.db")

    with pytest.raises(PersistenceError):
        store.find("s")


def test_transcripts_round_trip_in_chronological_order(transcript_store):
    later = Transcript(
        id="t2",
        recording_id="r2",
        table_id="1",
        session_id="s",
        text="beta",
        created_at=datetime(2024, 5, 1, 10, 0, 10),
    )
    earlier = Transcript(
        id="t1",
        recording_id="r1",
        table_id="1",
        session_id="s",
        text="alpha",
        speaker_segments=[SpeakerSegment(speaker="A", text="alpha", start=0.0, end=1.0)],
        created_at=datetime(2024, 5, 1, 10, 0, 0),
    )
    other_table = Transcript(
        id="t3", table_id="2", session_id="s", text="delta", created_at=datetime(2024, 5, 1, 9, 0, 0)
    )
    for transcript in (later, earlier, other_table):
        transcript_store.save_transcript(transcript)

    table_rows = transcript_store.fetch_table_transcripts("1")
    assert [t.id for t in table_rows] == ["t1", "t2"]
    assert table_rows[0].speaker_segments[0].speaker == "A"
    assert len(transcript_store.fetch_session_transcripts("s")) == 3
    assert transcript_store.fetch_session_transcripts("empty") == []
    assert transcript_store.list_table_ids("s") == ["1", "2"]


def test_recording_status_only_moves_forward(transcript_store):
    transcript_store.save_recording(Recording(id="r1", table_id="1", session_id="s"))

    transcript_store.update_recording_status("r1", RecordingStatus.PROCESSING)
    completed = transcript_store.update_recording_status("r1", RecordingStatus.COMPLETED)

    assert completed.status is RecordingStatus.COMPLETED
    assert transcript_store.fetch_recording("r1").status is RecordingStatus.COMPLETED
    with pytest.raises(InvalidStatusTransition):
        transcript_store.update_recording_status("r1", RecordingStatus.PROCESSING)
    with pytest.raises(KeyError):
        transcript_store.update_recording_status("missing", RecordingStatus.PROCESSING)
