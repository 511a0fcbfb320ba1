"""
Bounded retry with exponential backoff.

Responsibilities:
- Backoff timing (exponential, capped, jittered)
- Attempt budget enforcement
- Retryability classification for navigation errors

Used for page navigation and for every persistence round-trip.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar('T')


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one class of operation."""
    max_attempts: int = 3
    initial_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2  # +/- fraction applied to each delay


NAVIGATION_RETRY = RetryPolicy(max_attempts=3, initial_delay=2.0)
WRITE_RETRY = RetryPolicy(max_attempts=4, initial_delay=1.0)
CHECKPOINT_RETRY = RetryPolicy(max_attempts=2, initial_delay=0.5)
FINALIZE_RETRY = RetryPolicy(max_attempts=3, initial_delay=1.0)


def compute_backoff_delay(retry_index: int, policy: RetryPolicy) -> float:
    """
    Delay before retry number retry_index (0-based).

    base * multiplier^n, capped at max_delay, then +/- jitter.
    """
    delay = min(policy.initial_delay * (policy.multiplier ** retry_index), policy.max_delay)
    jitter = delay * random.uniform(-policy.jitter, policy.jitter)
    return max(0.0, min(delay + jitter, policy.max_delay))


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

TRANSIENT_NAVIGATION_MARKERS = (
    'timeout',
    'network',
    'connection',
    'econnreset',
    'enotfound',
    'econnrefused',
    'err_',
    'target closed',
)


def is_transient_navigation_error(exc: BaseException) -> bool:
    """Timeouts, network failures and net::ERR_* codes are worth retrying."""
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_NAVIGATION_MARKERS)


# ---------------------------------------------------------------------------
# Async retry loop
# ---------------------------------------------------------------------------

async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = lambda exc: True,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = 'operation',
) -> T:
    """
    Await fn() until it succeeds or the attempt budget is spent.

    The last error is re-raised when attempts are exhausted or the error
    is not retryable. on_retry receives (attempt, error, next_delay).
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                raise
            delay = compute_backoff_delay(attempt - 1, policy)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            else:
                log.warning(
                    'retrying',
                    operation=label,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay=round(delay, 2),
                    error=str(exc)[:200],
                )
            await sleep(delay)
