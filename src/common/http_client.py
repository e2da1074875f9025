"""Shared HTTP helpers used by registry sources.

Encapsulates timeout, retry/backoff and status classification so sources
avoid duplicating try/except blocks. Transient failures (timeouts, connection
errors, 5xx, 429, truncated bodies) are retried with exponential backoff;
4xx responses are terminal and surface immediately as ``PackageNotFound``.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from constants import Constants
from common.errors import NetworkFailure, PackageNotFound
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 429})


class TransientHTTPError(Exception):
    """A failure worth another attempt."""


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay.
        timeout: Per-request timeout in seconds.
        sleep: Injected sleep function (tests pass a no-op).
    """

    attempts: int = Constants.HTTP_RETRY_MAX
    base_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    max_delay: float = Constants.HTTP_RETRY_MAX_DELAY_SEC
    timeout: float = Constants.REQUEST_TIMEOUT
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_constants(cls) -> "RetryPolicy":
        """Build a policy from the (possibly overridden) Constants."""
        return cls(
            attempts=max(1, int(Constants.HTTP_RETRY_MAX)),
            base_delay=float(Constants.HTTP_RETRY_BASE_DELAY_SEC),
            max_delay=float(Constants.HTTP_RETRY_MAX_DELAY_SEC),
            timeout=float(Constants.REQUEST_TIMEOUT),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def _check_status(response: requests.Response, url: str, context: str) -> None:
    status = response.status_code
    if status >= 500 or status in RETRYABLE_STATUS:
        raise TransientHTTPError(f"HTTP {status}")
    if 400 <= status < 500:
        raise PackageNotFound(
            f"{context}: {safe_url(url)} returned HTTP {status}",
            status_code=status,
            package=context,
        )


def _read_body(response: requests.Response) -> bytes:
    """Read a streamed body fully, detecting truncation against Content-Length."""
    chunks = []
    received = 0
    for chunk in response.iter_content(chunk_size=Constants.TARBALL_CHUNK_BYTES):
        if chunk:
            chunks.append(chunk)
            received += len(chunk)
    expected = response.headers.get("Content-Length")
    # Content-Length describes the encoded body; only compare when not re-encoded.
    if expected and expected.isdigit() and not response.headers.get("Content-Encoding"):
        if received < int(expected):
            raise TransientHTTPError(f"truncated body: {received} of {expected} bytes")
    return b"".join(chunks)


def request_with_retry(
    url: str,
    *,
    context: str,
    policy: Optional[RetryPolicy] = None,
    headers: Optional[Dict[str, str]] = None,
) -> bytes:
    """GET ``url`` and return the body, retrying transient failures.

    Args:
        url: Target URL.
        context: Human-readable tag for logs and errors (usually the package name).
        policy: Retry policy; defaults to one built from Constants.
        headers: Optional request headers.

    Returns:
        bytes: The full response body.

    Raises:
        PackageNotFound: On any 4xx (not retried).
        NetworkFailure: When every attempt failed transiently.
    """
    policy = policy or RetryPolicy.from_constants()
    safe_target = safe_url(url)
    request_headers = {"User-Agent": Constants.USER_AGENT}
    if headers:
        request_headers.update(headers)

    last_error = "no attempts made"
    for attempt in range(1, policy.attempts + 1):
        with Timer() as t:
            try:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP request",
                        extra=extra_context(
                            event="http_request",
                            component="http_client",
                            action="GET",
                            target=safe_target,
                            context=context,
                            attempt=attempt,
                        ),
                    )
                response = requests.get(
                    url, headers=request_headers, timeout=policy.timeout, stream=True
                )
                try:
                    _check_status(response, url, context)
                    body = _read_body(response)
                finally:
                    response.close()
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP response ok",
                        extra=extra_context(
                            event="http_response",
                            component="http_client",
                            action="GET",
                            outcome="success",
                            status_code=response.status_code,
                            duration_ms=t.duration_ms(),
                            target=safe_target,
                            context=context,
                        ),
                    )
                return body
            except requests.Timeout:
                last_error = f"timed out after {policy.timeout} seconds"
            except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as exc:
                last_error = f"connection error: {exc}"
            except TransientHTTPError as exc:
                last_error = str(exc)

        if attempt < policy.attempts:
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s: attempt %d/%d failed (%s); retrying in %.2fs",
                context,
                attempt,
                policy.attempts,
                last_error,
                delay,
                extra=extra_context(
                    event="http_retry",
                    component="http_client",
                    target=safe_target,
                    attempt=attempt,
                ),
            )
            policy.sleep(delay)

    raise NetworkFailure(
        f"{context}: request to {safe_target} failed after {policy.attempts} attempts: {last_error}",
        package=context,
    )


def get_json(
    url: str,
    *,
    context: str,
    policy: Optional[RetryPolicy] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """GET ``url`` with retries and parse the body as JSON.

    Raises:
        NetworkFailure: When the body is not valid JSON (treated as a broken
            response after transport retries are exhausted).
    """
    body = request_with_retry(url, context=context, policy=policy, headers=headers)
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        if is_debug_enabled(logger):
            logger.debug(
                "JSON decode error",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    action="get_json",
                    outcome="json_decode_error",
                    target=safe_url(url),
                ),
            )
        raise NetworkFailure(f"{context}: invalid JSON from {safe_url(url)}: {exc}", package=context) from exc
