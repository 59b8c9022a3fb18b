"""Logging helpers for cafesum."""

from __future__ import annotations

import logging
from typing import Optional, Union

_LOGGER_CONFIGURED = False

# Client libraries log every HTTP round trip at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure process logging once; later calls only adjust the level."""

    global _LOGGER_CONFIGURED
    numeric = _resolve_level(level)
    if _LOGGER_CONFIGURED:
        logging.getLogger("cafesum").setLevel(numeric)
        return

    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
    _LOGGER_CONFIGURED = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger, configuring the defaults on first use."""

    configure_logging()
    return logging.getLogger(name or "cafesum")


__all__ = ["configure_logging", "get_logger"]
