"""Logging helpers shared by every module.

Provides structured ``extra=`` payloads, a cheap DEBUG guard, URL redaction
so credentials never reach log output, and a small timing context manager.
"""
from __future__ import annotations

import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_SENSITIVE_QUERY_KEYS = {"token", "access_token", "auth", "password", "key", "signature"}
_TOKEN_PATTERN = re.compile(r"(?i)(bearer\s+|npm_)[A-Za-z0-9._\-]+")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once for CLI usage.

    Args:
        level: Optional level name; defaults to $VOLTPM_LOG_LEVEL or INFO.
    """
    level_name = (level or os.environ.get("VOLTPM_LOG_LEVEL") or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=Constants.LOG_FORMAT)
    root.setLevel(level_value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping for structured log records.

    None-valued fields are dropped so formatters only see populated keys.
    """
    return {k: v for k, v in fields.items() if v is not None}


def redact(text: str) -> str:
    """Mask bearer/npm tokens that may appear in free text."""
    if not text:
        return text
    return _TOKEN_PATTERN.sub(lambda m: f"{m.group(1)}[REDACTED]", text)


def safe_url(url: str) -> str:
    """Strip userinfo and sensitive query values from a URL for logging."""
    if not url:
        return url
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = urllib.parse.urlencode(
            [(k, "[REDACTED]" if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in pairs]
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


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
        """Elapsed milliseconds (running total while inside the block)."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
