"""Dummy completion service for testing or offline usage."""

from __future__ import annotations

import json
import re

from ...core.budget import extract_keywords
from .base import CompletionService

_FOCUS = re.compile(r"Focus on:\s*(\w+)")
_TABLE = re.compile(r"--- Table (\S+) ---|Table (\S+):")


class DummyCompletionService(CompletionService):
    """Answers with deterministic, facet-shaped JSON derived from the prompt text."""

    def __init__(self) -> None:
        self.calls = 0

    async def submit(
        self,
        system_prompt: str,
        user_prompt: str,
        capability_id: str,
        max_response_size: int,
        *,
        json_mode: bool = True,
    ) -> str:
        self.calls += 1
        if not json_mode:
            return (
                f"Offline answer from {capability_id}: the session context holds "
                f"{len(system_prompt)} characters. Configure a real completion backend for analysis."
            )

        focus = _FOCUS.search(user_prompt)
        facet = focus.group(1) if focus else ""
        tables = [a or b for a, b in _TABLE.findall(user_prompt)] or ["1"]
        first = tables[0].rstrip(":")
        if facet == "conflicts":
            payload = {"conflicts": []}
        elif facet == "agreements":
            payload = {"agreements": []}
        elif facet == "themes":
            payload = {
                "themes": [
                    {"theme": word, "frequency": 1, "locations": [first], "sentiment": 0.0}
                    for word in extract_keywords(user_prompt, 3)
                ]
            }
        elif facet == "sentiment":
            payload = {
                "overall": 0.0,
                "by_location": {table.rstrip(":"): 0.0 for table in tables},
                "interpretation": "Neutral (offline placeholder)",
                "insights": [],
            }
        else:
            payload = {"recommendations": []}
        return json.dumps(payload)


__all__ = ["DummyCompletionService"]
