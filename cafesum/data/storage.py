"""SQLite storage for transcripts and analysis records."""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..logging import get_logger
from .models import (
    AnalysisRecord,
    AnalysisScope,
    FacetType,
    Recording,
    RecordingStatus,
    SpeakerSegment,
    Transcript,
)

LOGGER = get_logger(__name__)

# Minimum step applied when an overwrite lands within the clock resolution.
_UPDATE_EPSILON = 1e-6

_ANY = object()


class PersistenceError(RuntimeError):
    """Raised when the underlying database cannot be read or written."""


class _SQLiteStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            LOGGER.error("Could not open %s while trying to %s: %s", self.path, action, exc)
            raise PersistenceError(f"Failed to {action}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            LOGGER.error("Database error while trying to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}: {exc}") from exc
        finally:
            conn.close()


class TranscriptStore(_SQLiteStore):
    """Recordings and the transcripts produced from them."""

    def initialize(self) -> None:
        with self._transaction("initialise transcript tables") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recordings (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    table_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    duration REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transcripts (
                    id TEXT PRIMARY KEY,
                    recording_id TEXT,
                    session_id TEXT NOT NULL,
                    table_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    speaker_segments TEXT,
                    confidence REAL NOT NULL DEFAULT 0,
                    language TEXT NOT NULL DEFAULT 'en',
                    duration REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transcripts_session ON transcripts(session_id, table_id)"
            )

    def save_recording(self, recording: Recording) -> None:
        with self._transaction("save recording") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO recordings (id, session_id, table_id, status, duration, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    recording.id,
                    recording.session_id,
                    recording.table_id,
                    recording.status.value,
                    recording.duration_seconds,
                    recording.created_at.isoformat(),
                ),
            )

    def fetch_recording(self, recording_id: str) -> Optional[Recording]:
        with self._transaction("fetch recording") as conn:
            row = conn.execute(
                "SELECT id, session_id, table_id, status, duration, created_at FROM recordings WHERE id = ?",
                (recording_id,),
            ).fetchone()
        if not row:
            return None
        return Recording(
            id=row[0],
            session_id=row[1],
            table_id=row[2],
            status=RecordingStatus(row[3]),
            duration_seconds=row[4],
            created_at=datetime.fromisoformat(row[5]),
        )

    def update_recording_status(self, recording_id: str, status: RecordingStatus) -> Recording:
        """Move a recording forward in its lifecycle.

        Raises ``InvalidStatusTransition`` for regressions and ``KeyError`` for
        unknown recordings.
        """

        recording = self.fetch_recording(recording_id)
        if recording is None:
            raise KeyError(recording_id)
        advanced = recording.advance(status)
        if advanced is not recording:
            with self._transaction("update recording status") as conn:
                conn.execute(
                    "UPDATE recordings SET status = ? WHERE id = ?",
                    (advanced.status.value, recording_id),
                )
        return advanced

    def save_transcript(self, transcript: Transcript) -> None:
        with self._transaction("save transcript") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO transcripts (
                    id, recording_id, session_id, table_id, text, speaker_segments,
                    confidence, language, duration, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transcript.id,
                    transcript.recording_id,
                    transcript.session_id,
                    transcript.table_id,
                    transcript.text,
                    json.dumps([segment.model_dump() for segment in transcript.speaker_segments]),
                    transcript.confidence_score,
                    transcript.language,
                    transcript.duration_seconds,
                    transcript.created_at.isoformat(),
                ),
            )

    def _fetch_transcripts(self, where: str, params: tuple) -> List[Transcript]:
        with self._transaction("fetch transcripts") as conn:
            rows = conn.execute(
                "SELECT id, recording_id, session_id, table_id, text, speaker_segments, confidence, "
                f"language, duration, created_at FROM transcripts WHERE {where} ORDER BY created_at, id",
                params,
            ).fetchall()
        results: List[Transcript] = []
        for row in rows:
            segments_data = json.loads(row[5]) if row[5] else []
            results.append(
                Transcript(
                    id=row[0],
                    recording_id=row[1],
                    session_id=row[2],
                    table_id=row[3],
                    text=row[4],
                    speaker_segments=[SpeakerSegment(**segment) for segment in segments_data],
                    confidence_score=row[6],
                    language=row[7],
                    duration_seconds=row[8],
                    created_at=datetime.fromisoformat(row[9]),
                )
            )
        return results

    def fetch_session_transcripts(self, session_id: str) -> List[Transcript]:
        return self._fetch_transcripts("session_id = ?", (session_id,))

    def fetch_table_transcripts(self, table_id: str) -> List[Transcript]:
        return self._fetch_transcripts("table_id = ?", (table_id,))

    def list_table_ids(self, session_id: str) -> List[str]:
        with self._transaction("list tables") as conn:
            rows = conn.execute(
                "SELECT DISTINCT table_id FROM transcripts WHERE session_id = ? ORDER BY table_id",
                (session_id,),
            ).fetchall()
        return [row[0] for row in rows]


class AnalysisStore(_SQLiteStore):
    """Analysis records with at most one row per (session, table, facet, scope)."""

    _COLUMNS = "id, session_id, table_key, facet_type, scope, payload, metadata, created_at, updated_at"

    def initialize(self) -> None:
        with self._transaction("initialise analysis table") as conn:
            # table_key is '' for session-wide rows; NULLs never collide in a UNIQUE index.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analyses (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    table_key TEXT NOT NULL DEFAULT '',
                    facet_type TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    metadata TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE (session_id, table_key, facet_type, scope)
                )
                """
            )

    def upsert(
        self,
        session_id: str,
        table_id: Optional[str],
        facet_type: FacetType,
        scope: AnalysisScope,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisRecord:
        """Write or overwrite the single record for this key."""

        now = time.time()
        table_key = table_id or ""
        with self._transaction(f"store {facet_type.value} analysis") as conn:
            conn.execute(
                """
                INSERT INTO analyses (
                    id, session_id, table_key, facet_type, scope, payload, metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (session_id, table_key, facet_type, scope) DO UPDATE SET
                    payload = excluded.payload,
                    metadata = excluded.metadata,
                    updated_at = MAX(excluded.updated_at, analyses.updated_at + ?)
                """,
                (
                    uuid.uuid4().hex,
                    session_id,
                    table_key,
                    facet_type.value,
                    scope.value,
                    json.dumps(payload, default=str),
                    json.dumps(metadata, default=str) if metadata is not None else None,
                    now,
                    now,
                    _UPDATE_EPSILON,
                ),
            )
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM analyses "
                "WHERE session_id = ? AND table_key = ? AND facet_type = ? AND scope = ?",
                (session_id, table_key, facet_type.value, scope.value),
            ).fetchone()
        LOGGER.debug("Stored %s/%s analysis for session %s", scope.value, facet_type.value, session_id)
        return self._to_record(row)

    @staticmethod
    def _to_record(row: tuple) -> AnalysisRecord:
        return AnalysisRecord(
            id=row[0],
            session_id=row[1],
            table_id=row[2] or None,
            facet_type=FacetType(row[3]),
            scope=AnalysisScope(row[4]),
            payload=json.loads(row[5]),
            metadata=json.loads(row[6]) if row[6] else {},
            created_at=row[7],
            updated_at=row[8],
        )

    def find(
        self,
        session_id: str,
        facet_type: Optional[FacetType] = None,
        table_id: Any = _ANY,
        scope: Optional[AnalysisScope] = None,
    ) -> List[AnalysisRecord]:
        """Records for a session, newest first, narrowed by any given filters.

        ``table_id`` left unset matches every row; ``None`` matches only
        session-wide rows.
        """

        clauses = ["session_id = ?"]
        params: List[Any] = [session_id]
        if facet_type is not None:
            clauses.append("facet_type = ?")
            params.append(facet_type.value)
        if table_id is not _ANY:
            clauses.append("table_key = ?")
            params.append(table_id or "")
        if scope is not None:
            clauses.append("scope = ?")
            params.append(scope.value)
        with self._transaction("find analyses") as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM analyses WHERE {' AND '.join(clauses)} "
                "ORDER BY updated_at DESC",
                params,
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def find_one(
        self,
        session_id: str,
        facet_type: FacetType,
        table_id: Optional[str] = None,
        scope: AnalysisScope = AnalysisScope.SESSION,
    ) -> Optional[AnalysisRecord]:
        records = self.find(session_id, facet_type=facet_type, table_id=table_id, scope=scope)
        return records[0] if records else None

    def count(self, session_id: str) -> int:
        with self._transaction("count analyses") as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM analyses WHERE session_id = ?", (session_id,)
            ).fetchone()[0]


__all__ = ["AnalysisStore", "PersistenceError", "TranscriptStore"]
