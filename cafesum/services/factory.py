"""Factories for runtime service selection."""

from __future__ import annotations

from typing import Optional

from ..config import get_settings
from .completion.base import CompletionService
from .completion.dummy import DummyCompletionService

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class ServiceConfigurationError(ValueError):
    """Raised when an unknown backend is requested."""


def _normalise(name: Optional[str]) -> str:
    if not name:
        return "none"
    return name.strip().lower()


def resolve_completion_backend(name: Optional[str]) -> Optional[CompletionService]:
    backend = _normalise(name)
    if backend in {"", "none", "off"}:
        return None
    if backend == "dummy":
        return DummyCompletionService()
    if backend in {"openai", "groq"}:
        from .completion.openai_client import OpenAICompletionService

        if backend == "groq":
            return OpenAICompletionService(base_url=get_settings().openai_base_url or GROQ_BASE_URL)
        return OpenAICompletionService()
    raise ServiceConfigurationError(f"Unknown completion backend: {name}")


__all__ = ["GROQ_BASE_URL", "ServiceConfigurationError", "resolve_completion_backend"]
