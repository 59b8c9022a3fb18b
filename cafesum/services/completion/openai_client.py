"""OpenAI-compatible chat completion service (OpenAI, Groq and similar endpoints)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ...config import get_settings
from ...logging import get_logger
from .base import (
    CapabilityRateLimitError,
    CapabilitySizeLimitError,
    CapabilityTimeoutError,
    CompletionService,
    ExternalCapabilityError,
    MalformedResponseError,
)

LOGGER = get_logger(__name__)

_SIZE_LIMIT_HINTS = ("context_length", "too large", "maximum context", "reduce the length")


class OpenAICompletionService(CompletionService):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.completion_timeout
        self.temperature = temperature if temperature is not None else settings.temperature
        try:
            import openai  # type: ignore
        except ImportError as exc:  # pragma: no cover - runtime dependency guard
            raise RuntimeError("openai package is required for OpenAICompletionService") from exc
        self._openai = openai

        client_kwargs: Dict[str, Any] = {"timeout": self.timeout, "max_retries": 0}
        if api_key or settings.openai_api_key:
            client_kwargs["api_key"] = api_key or settings.openai_api_key
        if base_url or settings.openai_base_url:
            client_kwargs["base_url"] = base_url or settings.openai_base_url

        try:
            self.client = openai.AsyncOpenAI(**client_kwargs)
        except openai.OpenAIError as exc:
            message = str(exc)
            if "api_key" in message.lower():
                raise RuntimeError(
                    "Completion API key not configured. Set the OPENAI_API_KEY environment variable "
                    "or CAFESUM_OPENAI_API_KEY."
                ) from exc
            raise RuntimeError(f"Failed to initialise completion client: {message}") from exc

    async def submit(
        self,
        system_prompt: str,
        user_prompt: str,
        capability_id: str,
        max_response_size: int,
        *,
        json_mode: bool = True,
    ) -> str:
        request: Dict[str, Any] = {
            "model": capability_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": max_response_size,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        LOGGER.debug("Requesting completion from %s (%d prompt chars)", capability_id, len(system_prompt) + len(user_prompt))
        try:
            completion = await self.client.chat.completions.create(**request)
        except Exception as exc:
            raise self._translate_error(exc) from exc

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise MalformedResponseError(f"Completion from {capability_id} has no message") from exc
        if not content:
            raise MalformedResponseError(f"Completion from {capability_id} is empty")
        return content

    def _translate_error(self, exc: Exception) -> ExternalCapabilityError:
        openai = self._openai
        message = str(getattr(exc, "message", None) or exc)
        if isinstance(exc, openai.APITimeoutError):
            return CapabilityTimeoutError(message)
        if isinstance(exc, openai.RateLimitError) or "rate_limit" in message:
            return CapabilityRateLimitError(message)
        if any(hint in message.lower() for hint in _SIZE_LIMIT_HINTS):
            return CapabilitySizeLimitError(message)
        return ExternalCapabilityError(message)


__all__ = ["OpenAICompletionService"]
