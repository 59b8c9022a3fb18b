"""Completion capability abstractions."""

from __future__ import annotations

import abc
import asyncio
from typing import Optional


class ExternalCapabilityError(RuntimeError):
    """Any failure of the external completion capability."""


class CapabilitySizeLimitError(ExternalCapabilityError):
    """The request exceeded the capability's context window."""


class CapabilityRateLimitError(ExternalCapabilityError):
    """The capability rejected the request because of rate limiting."""


class CapabilityTimeoutError(ExternalCapabilityError):
    """The capability did not answer in time."""


class MalformedResponseError(ExternalCapabilityError):
    """The capability answered with something that does not match the expected shape."""


class CompletionService(abc.ABC):
    """Turn a system and user prompt into a text response."""

    @abc.abstractmethod
    async def submit(
        self,
        system_prompt: str,
        user_prompt: str,
        capability_id: str,
        max_response_size: int,
        *,
        json_mode: bool = True,
    ) -> str:
        raise NotImplementedError


async def bounded_submit(
    service: CompletionService,
    system_prompt: str,
    user_prompt: str,
    capability_id: str,
    max_response_size: int,
    *,
    timeout: Optional[float] = None,
    json_mode: bool = True,
) -> str:
    """Submit with an overall deadline; expiry surfaces as ``CapabilityTimeoutError``."""

    call = service.submit(
        system_prompt, user_prompt, capability_id, max_response_size, json_mode=json_mode
    )
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as exc:
        raise CapabilityTimeoutError(f"No response from {capability_id} within {timeout}s") from exc


__all__ = [
    "CapabilityRateLimitError",
    "CapabilitySizeLimitError",
    "CapabilityTimeoutError",
    "CompletionService",
    "ExternalCapabilityError",
    "MalformedResponseError",
    "bounded_submit",
]
