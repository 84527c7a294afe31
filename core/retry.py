# core/retry.py
"""Bounded exponential-backoff retry for provider calls."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TypeVar

import structlog

from config import settings
from core.cancellation import CancelToken, sleep_or_cancel
from core.errors import ClassifiedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _retry_if_retryable(error: Exception) -> bool:
    return isinstance(error, ClassifiedError) and error.retryable


def never_retry(_error: Exception) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, a call is retried."""

    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float = 2.0
    should_retry: Callable[[Exception], bool] = field(default=_retry_if_retryable)

    def delay_ms(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(
            float(self.max_delay_ms),
            self.base_delay_ms * self.backoff_multiplier ** (attempt - 1),
        )

    def without_retries(self) -> RetryPolicy:
        return replace(self, should_retry=never_retry)


def cloud_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.CLOUD_MAX_RETRIES,
        base_delay_ms=settings.CLOUD_RETRY_BASE_DELAY_MS,
        max_delay_ms=settings.CLOUD_RETRY_MAX_DELAY_MS,
        backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
    )


def local_policy() -> RetryPolicy:
    # Local failures are usually persistent (server not running), so retry
    # less often and wait longer.
    return RetryPolicy(
        max_retries=settings.LOCAL_MAX_RETRIES,
        base_delay_ms=settings.LOCAL_RETRY_BASE_DELAY_MS,
        max_delay_ms=settings.LOCAL_RETRY_MAX_DELAY_MS,
        backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
    )


@dataclass(frozen=True)
class RetryEvent:
    attempt: int
    error: Exception
    delay_ms: float | None
    exhausted: bool


RetryObserver = Callable[[RetryEvent], None]


def _notify(observer: RetryObserver | None, event: RetryEvent) -> None:
    if observer is None:
        return
    try:
        observer(event)
    except Exception as exc:  # observers must not change the outcome
        logger.warning("Retry observer raised: %s", exc, exc_info=True)


async def execute(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    cancel_token: CancelToken | None = None,
    on_event: RetryObserver | None = None,
    label: str = "AI call",
) -> T:
    """Run ``fn`` and retry it according to ``policy``.

    Attempts run strictly one after another; ``max_retries`` retries means at
    most ``max_retries + 1`` attempts. The cancel token is checked before
    every attempt and interrupts backoff sleeps.
    """
    attempt = 1
    while True:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            return await fn()
        except ClassifiedError as error:
            retry = attempt <= policy.max_retries and policy.should_retry(error)
            if not retry:
                if attempt > 1 or error.retryable:
                    logger.error(
                        f"{label}: giving up after {attempt} attempt(s). Last error: {error.message}",
                        category=error.category.value,
                    )
                _notify(on_event, RetryEvent(attempt, error, None, True))
                raise
            delay = policy.delay_ms(attempt)
            logger.warning(
                f"{label} (Attempt {attempt}/{policy.max_retries + 1}): {error.message}. "
                f"Retrying in {delay / 1000:.2f} seconds.",
                category=error.category.value,
            )
            _notify(on_event, RetryEvent(attempt, error, delay, False))
            await sleep_or_cancel(delay / 1000, cancel_token)
            attempt += 1
