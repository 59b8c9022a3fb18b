from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from cafesum.services.completion.base import (
    CapabilityRateLimitError,
    CapabilitySizeLimitError,
    CapabilityTimeoutError,
    ExternalCapabilityError,
    MalformedResponseError,
)
from cafesum.services.completion.openai_client import OpenAICompletionService


class FakeTimeoutError(Exception):
    """Stands in for openai.APITimeoutError."""


class FakeRateLimitError(Exception):
    """Stands in for openai.RateLimitError."""


def _make_service(outcome) -> tuple[OpenAICompletionService, list[dict]]:
    service = object.__new__(OpenAICompletionService)
    service.temperature = 0.3
    service.timeout = 5.0
    service._openai = SimpleNamespace(APITimeoutError=FakeTimeoutError, RateLimitError=FakeRateLimitError)

    requests: list[dict] = []

    class DummyCompletions:
        async def create(self, **kwargs):
            requests.append(kwargs)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

    service.client = SimpleNamespace(chat=SimpleNamespace(completions=DummyCompletions()))
    return service, requests


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def test_submit_sends_json_mode_request():
    service, requests = _make_service(_response('{"themes": []}'))

    text = asyncio.run(service.submit("system", "user", "llama-3.3-70b-versatile", 2000))

    assert text == '{"themes": []}'
    request = requests[0]
    assert request["model"] == "llama-3.3-70b-versatile"
    assert request["max_tokens"] == 2000
    assert request["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in request["messages"]] == ["system", "user"]


def test_submit_without_json_mode_omits_response_format():
    service, requests = _make_service(_response("plain answer"))

    asyncio.run(service.submit("system", "user", "model", 100, json_mode=False))

    assert "response_format" not in requests[0]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (FakeTimeoutError("timed out"), CapabilityTimeoutError),
        (FakeRateLimitError("slow down"), CapabilityRateLimitError),
        (RuntimeError("Please reduce the length of the messages"), CapabilitySizeLimitError),
        (RuntimeError("internal server error"), ExternalCapabilityError),
    ],
)
def test_client_errors_are_translated(error, expected):
    service, _ = _make_service(error)

    with pytest.raises(expected):
        asyncio.run(service.submit("system", "user", "model", 100))


def test_empty_content_is_malformed():
    service, _ = _make_service(_response(""))

    with pytest.raises(MalformedResponseError):
        asyncio.run(service.submit("system", "user", "model", 100))
