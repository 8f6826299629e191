"""Tenacity retry strategies and classification for remote fetches.

Provides:
- Retryability classification of attempt failures
- Retry-After aware wait strategy
- Tenacity controller builder driven by :class:`DownloadPolicy`
"""

from __future__ import annotations

import email.utils
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import tenacity
from tenacity import RetryCallState, retry_if_exception

from SiteGraph.FileSource.config.models import DownloadPolicy
from SiteGraph.FileSource.errors import RetryableStatusError, StallError
from SiteGraph.FileSource.io_utils import SizeMismatchError

LOGGER = logging.getLogger(__name__)

__all__ = ["is_retryable", "parse_retry_after", "build_retrying"]

_RETRYABLE_EXCEPTIONS = (
    StallError,
    RetryableStatusError,
    SizeMismatchError,
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


def is_retryable(exception: BaseException) -> bool:
    """Return ``True`` when ``exception`` is a transient attempt failure.

    Examples:
        >>> is_retryable(StallError("https://example.com/a", 1.0, 0))
        True
        >>> is_retryable(ValueError("boom"))
        False
    """

    if isinstance(exception, httpx.LocalProtocolError):
        return False
    return isinstance(exception, _RETRYABLE_EXCEPTIONS)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given as seconds or an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class _WaitRetryAfter(tenacity.wait.wait_base):
    """Prefer the server's Retry-After hint over exponential backoff."""

    def __init__(self, fallback: tenacity.wait.wait_base, cap_s: float) -> None:
        self.fallback = fallback
        self.cap_s = cap_s

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None and retry_after > 0:
                wait_s = min(float(retry_after), self.cap_s)
                LOGGER.debug("Using Retry-After header: %.1fs (capped at %.1fs)", wait_s, self.cap_s)
                return wait_s
        return self.fallback(retry_state)


def _default_before_sleep_hook(retry_state: RetryCallState) -> None:
    next_action = retry_state.next_action
    wait_ms = int(next_action.sleep * 1000) if next_action is not None else 0
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    LOGGER.warning(
        "retry attempt=%d wait_ms=%d elapsed_s=%.1f cause=%s",
        retry_state.attempt_number,
        wait_ms,
        retry_state.seconds_since_start,
        type(exc).__name__ if exc else None,
        extra={"stage": "retry", "url": getattr(exc, "url", None)},
    )


def build_retrying(
    policy: DownloadPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    before_sleep_hook: Optional[Callable[[RetryCallState], None]] = None,
) -> tenacity.Retrying:
    """Build the per-request retry controller.

    Attempts are strictly sequential. The last failure is re-raised once
    ``policy.stall_retry_limit`` attempts are used up.
    """

    fallback_wait = tenacity.wait_random_exponential(
        multiplier=policy.backoff_multiplier,
        max=policy.backoff_max_s,
    )
    return tenacity.Retrying(
        retry=retry_if_exception(is_retryable),
        stop=tenacity.stop_after_attempt(policy.stall_retry_limit),
        wait=_WaitRetryAfter(fallback=fallback_wait, cap_s=policy.retry_after_cap_s),
        sleep=sleep,
        before_sleep=before_sleep_hook or _default_before_sleep_hook,
        reraise=True,
    )
