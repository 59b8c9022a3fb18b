"""Completion services."""

from .base import (
    CapabilityRateLimitError,
    CapabilitySizeLimitError,
    CapabilityTimeoutError,
    CompletionService,
    ExternalCapabilityError,
    MalformedResponseError,
)
from .dummy import DummyCompletionService

__all__ = [
    "CapabilityRateLimitError",
    "CapabilitySizeLimitError",
    "CapabilityTimeoutError",
    "CompletionService",
    "DummyCompletionService",
    "ExternalCapabilityError",
    "MalformedResponseError",
]
