from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..common.errors import ApiRequestError, TransportError, is_transient
from ..common.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    """
    Exponential backoff with proportional jitter.

    delay(attempt) = min(initial * multiplier**attempt, max) + random() * jitter_ratio * base
    """

    max_retries: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    retry_condition: Callable[[BaseException], bool] = is_transient

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryOptions":
        return cls(
            max_retries=int(settings.JAMF_MAX_RETRIES),
            initial_delay_s=settings.JAMF_RETRY_DELAY / 1000.0,
            max_delay_s=settings.JAMF_RETRY_MAX_DELAY / 1000.0,
            multiplier=float(settings.JAMF_RETRY_BACKOFF_MULTIPLIER),
        )

    def delay_for(self, attempt: int, *, rand: Callable[[], float] = random.random) -> float:
        base = min(self.initial_delay_s * (self.multiplier ** max(0, attempt)), self.max_delay_s)
        if base <= 0:
            return 0.0
        return base + rand() * self.jitter_ratio * base


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    *,
    label: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Invoke `fn` until it succeeds, `retry_condition` rejects the error, or
    `max_retries` re-invocations have been spent. The last error propagates.

    A server Retry-After (HTTP 429) raises the floor of the computed delay.
    """
    opts = options or RetryOptions()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= opts.max_retries or not opts.retry_condition(exc):
                raise
            delay = opts.delay_for(attempt)
            if isinstance(exc, ApiRequestError) and exc.retry_after_s:
                delay = max(delay, float(exc.retry_after_s))
            attempt += 1
            log_event(
                logger,
                "retry.scheduled",
                severity="WARNING",
                target=label or None,
                attempt=attempt,
                max_retries=opts.max_retries,
                delay_s=round(delay, 3),
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
            )
            await sleep(delay)


def _collect_abandoned(operation: str, task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    log_event(
        logger,
        "timeout.abandoned_finished",
        severity="WARNING" if exc is not None else "INFO",
        operation=operation,
        error_type=type(exc).__name__ if exc is not None else None,
    )


async def with_timeout(awaitable: Awaitable[T], timeout_s: float, *, operation: str = "operation") -> T:
    """
    Race a whole operation against a deadline.

    On expiry the caller stops waiting but the work keeps running: it may hold
    a shared token refresh or a write that already reached the server. Its
    eventual result or error is collected and logged, never raised.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_s)
    except asyncio.CancelledError:
        task.add_done_callback(functools.partial(_collect_abandoned, operation))
        raise
    if task in done:
        return task.result()

    task.add_done_callback(functools.partial(_collect_abandoned, operation))
    log_event(logger, "timeout.expired", severity="WARNING", operation=operation, timeout_s=timeout_s)
    raise TransportError(
        f"{operation} timed out after {timeout_s:g}s",
        code="TIMEOUT",
        suggestions=["The outcome is unknown; re-read the resource before retrying a write"],
    )
