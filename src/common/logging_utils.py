"""Logging helpers shared across the resolver, catalogs and CLI.

Structured DEBUG traces attach an ``extra`` payload built by
:func:`extra_context`; callers guard them with :func:`is_debug_enabled` so
that building the payload costs nothing at INFO level.
"""

from __future__ import annotations

import logging
import os
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_SENSITIVE_QUERY_KEYS = ("token", "key", "secret", "password", "auth")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger.

    Level precedence: explicit argument, then DEPFORGE_LOG_LEVEL, then INFO.
    """
    name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    numeric = getattr(logging, name, None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=Constants.LOG_FORMAT, force=True)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**kwargs: Any) -> Dict[str, Any]:
    """Build the ``extra`` mapping for structured log records.

    None values are dropped so records only carry populated fields.
    """
    return {k: v for k, v in kwargs.items() if v is not None}


def redact(value: str) -> str:
    """Mask all but the first two characters of a secret."""
    if not value:
        return value
    return value[:2] + "***"


def safe_url(url: str) -> str:
    """Strip userinfo and mask sensitive query values in a URL."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    cleaned = [
        (k, redact(v) if any(s in k.lower() for s in _SENSITIVE_QUERY_KEYS) else v)
        for k, v in query
    ]
    return urllib.parse.urlunsplit(
        (parts.scheme, netloc, parts.path, urllib.parse.urlencode(cleaned), parts.fragment)
    )


class Timer:
    """Context manager measuring wall-clock duration."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds so far (or total, once exited)."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
