from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timedelta

import pytest

from cafesum.config import Settings
from cafesum.core.pipeline.service import AnalysisService
from cafesum.data.models import AnalysisScope, FacetType, RecordingStatus
from cafesum.services.completion.base import CompletionService, ExternalCapabilityError

BASE = datetime(2024, 5, 1, 10, 0, 0)
_FOCUS = re.compile(r"Focus on:\s*(\w+)")

FACET_RESPONSES = {
    "conflicts": {
        "conflicts": [
            {"location": str(i), "quote": "I disagree", "severity": 0.7, "description": "Funding"}
            for i in range(1, 6)
        ]
    },
    "agreements": {"agreements": [{"location": "1", "quote": "Agreed", "strength": 0.8}]},
    "themes": {"themes": [{"theme": "Gardens", "frequency": 3, "locations": ["1"], "sentiment": 0.2}]},
    "sentiment": {"overall": -0.4, "by_location": {"1": -0.4}, "interpretation": "Tense"},
}


class RecordingCompletion(CompletionService):
    def __init__(self, recommendations=None, fail_recommendations=False) -> None:
        self.calls: list[str] = []
        self.recommendations = recommendations
        self.fail_recommendations = fail_recommendations

    async def submit(self, system_prompt, user_prompt, capability_id, max_response_size, *, json_mode=True):
        match = _FOCUS.search(user_prompt)
        facet = match.group(1) if match else "recommendations"
        self.calls.append(facet)
        if facet == "recommendations":
            if self.fail_recommendations:
                raise ExternalCapabilityError("recommendations unavailable")
            return json.dumps({"recommendations": self.recommendations or []})
        return json.dumps(FACET_RESPONSES[facet])


def transcript_payloads() -> list[dict]:
    return [
        {
            "id": "t1",
            "tableId": "1",
            "sessionId": "session-1",
            "text": "alpha",
            "createdAt": BASE.isoformat(),
            "confidenceScore": 0.9,
        },
        {
            "id": "t2",
            "tableId": "1",
            "sessionId": "session-1",
            "text": "beta",
            "createdAt": (BASE + timedelta(seconds=10)).isoformat(),
            "speakerSegments": [
                {"speaker": "A", "text": "beta", "start": 0, "end": 1},
                {"speaker": "B", "text": "indeed", "start": 1, "end": 2},
            ],
        },
        {
            "id": "t3",
            "tableId": "1",
            "sessionId": "session-1",
            "text": "gamma",
            "createdAt": (BASE + timedelta(seconds=20)).isoformat(),
        },
        {
            "id": "t4",
            "tableId": "2",
            "sessionId": "session-1",
            "text": "delta",
            "createdAt": BASE.isoformat(),
        },
    ]


@pytest.fixture()
def completion():
    return RecordingCompletion()


@pytest.fixture()
def service(tmp_path, completion):
    settings = Settings(database_path=tmp_path / "cafesum.db")
    analysis_service = AnalysisService.from_settings(settings=settings, completion=completion)
    analysis_service.import_transcripts(transcript_payloads())
    return analysis_service


def test_import_marks_recordings_completed(service):
    recording = service.transcripts.fetch_recording("t1")

    assert recording is not None
    assert recording.status is RecordingStatus.COMPLETED
    assert service.transcripts.list_table_ids("session-1") == ["1", "2"]


def test_session_analysis_stores_each_facet_and_summary(service, completion):
    result = asyncio.run(service.generate_session_analysis("session-1"))

    assert not result.no_data
    assert sorted(completion.calls) == ["agreements", "conflicts", "sentiment", "themes"]
    assert set(result.records) == {"conflicts", "agreements", "themes", "sentiment", "summary"}
    assert result.participation_stats["total_tables"] == 2
    assert [row["table_id"] for row in result.cross_table_comparison] == ["1", "2"]

    themes = service.analyses.find_one("session-1", FacetType.THEMES)
    assert themes.id == result.records["themes"]
    assert themes.metadata["transcript_count"] == 4
    assert themes.metadata["schema_version"] == "1.0"
    assert "generated_at" in themes.metadata

    summary = service.analyses.find_one("session-1", FacetType.SUMMARY)
    assert "Found 5 areas of disagreement" in summary.payload["key_insights"]
    assert summary.payload["degraded_facets"] == []


def test_regenerating_overwrites_records(service):
    first = asyncio.run(service.generate_session_analysis("session-1"))
    before = service.analyses.find_one("session-1", FacetType.CONFLICTS)
    second = asyncio.run(service.generate_session_analysis("session-1"))
    after = service.analyses.find("session-1", facet_type=FacetType.CONFLICTS, table_id=None)

    assert len(after) == 1
    assert after[0].updated_at > before.updated_at
    assert first.records == second.records
    assert service.analyses.count("session-1") == 5


def test_empty_session_returns_no_data_without_capability_calls(service, completion):
    result = asyncio.run(service.generate_session_analysis("empty-session"))

    assert result.no_data
    assert result.status == "no_data"
    assert "empty-session" in result.message
    assert completion.calls == []
    assert service.analyses.find("empty-session") == []


def test_unknown_table_returns_no_data(service, completion):
    result = asyncio.run(service.generate_table_analysis("99"))

    assert result.no_data
    assert result.scope is AnalysisScope.TABLE
    assert completion.calls == []


def test_table_analysis_uses_aggregated_table_corpus(service):
    result = asyncio.run(service.generate_table_analysis("1", facets=["themes"]))

    assert result.session_id == "session-1"
    assert set(result.records) == {"themes", "summary"}
    record = service.analyses.find_one("session-1", FacetType.THEMES, "1", AnalysisScope.TABLE)
    assert record is not None
    assert record.metadata["transcript_count"] == 3
    assert service.analyses.find_one("session-1", FacetType.THEMES) is None


def test_degraded_facets_are_visible(tmp_path):
    settings = Settings(database_path=tmp_path / "cafesum.db")
    analysis_service = AnalysisService.from_settings(settings=settings, backend="none")
    analysis_service.import_transcripts(transcript_payloads())

    result = asyncio.run(analysis_service.generate_session_analysis("session-1"))

    assert sorted(result.degraded_facets) == ["agreements", "conflicts", "sentiment", "themes"]
    assert result.facets["themes"]["degraded"] is True
    assert result.facets["themes"]["note"]


def test_report_uses_capability_recommendations(tmp_path):
    completion = RecordingCompletion(
        recommendations=[
            {"type": "facilitation", "priority": "HIGH", "title": "Rotate hosts", "description": "d"}
        ]
    )
    analysis_service = AnalysisService.from_settings(
        settings=Settings(database_path=tmp_path / "cafesum.db"), completion=completion
    )
    analysis_service.import_transcripts(transcript_payloads())

    report = asyncio.run(analysis_service.generate_report("session-1"))

    assert report.status == "completed"
    assert report.recommendations_source == "capability"
    assert report.recommendations[0].title == "Rotate hosts"
    assert report.recommendations[0].priority == "high"
    assert report.executive_summary.conflict_count == 5
    assert report.executive_summary.top_themes == ["Gardens"]
    assert set(report.detailed_analysis) == {"conflicts", "agreements", "themes", "sentiment"}
    assert report.next_steps


def test_report_falls_back_to_rule_based_recommendations(tmp_path):
    completion = RecordingCompletion(fail_recommendations=True)
    analysis_service = AnalysisService.from_settings(
        settings=Settings(database_path=tmp_path / "cafesum.db"), completion=completion
    )
    analysis_service.import_transcripts(transcript_payloads())
    asyncio.run(analysis_service.generate_session_analysis("session-1"))
    completion.calls.clear()

    report = asyncio.run(analysis_service.generate_report("session-1"))

    assert completion.calls == ["recommendations"]
    assert report.recommendations_source == "rules"
    kinds = [(r.type, r.priority) for r in report.recommendations]
    assert kinds == [
        ("conflict_resolution", "high"),
        ("engagement", "medium"),
        ("theme_development", "medium"),
    ]


def test_report_for_empty_session(service, completion):
    report = asyncio.run(service.generate_report("empty-session"))

    assert report.status == "no_data"
    assert completion.calls == []


def test_chat_goes_through_cached_digest(service):
    reply = asyncio.run(service.chat("session-1", "What did table 1 discuss?"))

    assert not reply.refused
    assert service.analyses.find_one("session-1", FacetType.CHAT_SUMMARY) is not None
