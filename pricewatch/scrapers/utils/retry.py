"""Retry policy with exponential backoff, applied at the page-fetch boundary."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from playwright.async_api import Error as PlaywrightError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pricewatch.config import settings
from pricewatch.core.exceptions import TransientFetchError

T = TypeVar("T")

logger = structlog.get_logger(__name__)

# Playwright's TimeoutError subclasses its Error, so one entry covers both.
RETRYABLE_EXCEPTIONS = (
    TransientFetchError,
    httpx.TransportError,
    httpx.TimeoutException,
    PlaywrightError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Parameters of the shared backoff policy.

    max_retries counts retries, so a fetch is attempted max_retries + 1
    times. The n-th retry waits initial_delay * backoff_factor ** (n - 1),
    capped at max_delay.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.SCRAPER_MAX_RETRIES,
            initial_delay=settings.SCRAPER_RETRY_INITIAL_DELAY,
            backoff_factor=settings.SCRAPER_RETRY_BACKOFF_FACTOR,
            max_delay=settings.SCRAPER_RETRY_MAX_DELAY,
        )


def build_retrying(policy: RetryPolicy, log: Optional[Any] = None) -> AsyncRetrying:
    """Build a tenacity AsyncRetrying for the given policy."""
    log = log or logger

    def _log_before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "fetch_retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_retries + 1,
            sleep_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max(policy.max_retries, 0) + 1),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.backoff_factor,
            max=policy.max_delay,
        ),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=_log_before_sleep,
        reraise=True,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    log: Optional[Any] = None,
) -> T:
    """Run an async operation under the retry policy.

    Non-retryable exceptions propagate immediately; retryable ones
    propagate once attempts are exhausted.
    """
    async for attempt in build_retrying(policy, log):
        with attempt:
            return await operation()
    raise RuntimeError("retry loop exited without a result")  # pragma: no cover
