from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..common.errors import ApiRequestError, ConflictExceeded
from ..common.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class WriteAttempt:
    """Bookkeeping for one conflict-retried write invocation."""

    attempt: int = 0
    last_error: Optional[ApiRequestError] = None
    delay_s: float = 0.0


@dataclass(frozen=True)
class ConflictRetryPolicy:
    """
    Re-send an identical write when the backend reports an optimistic
    concurrency conflict (HTTP 409).

    Total attempts are bounded by `max_retries + 1`. Every other error
    propagates on first sight.
    """

    max_retries: int = 3
    retry_delay_s: float = 0.5

    @classmethod
    def from_settings(cls, settings: Any) -> "ConflictRetryPolicy":
        return cls(
            max_retries=int(settings.JAMF_CONFLICT_RETRY_MAX),
            retry_delay_s=float(settings.conflict_retry_delay_s),
        )

    async def run(
        self,
        write: Callable[[], Awaitable[T]],
        *,
        label: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        state = WriteAttempt()
        while True:
            state.attempt += 1
            try:
                return await write()
            except ApiRequestError as exc:
                if not exc.is_conflict:
                    raise
                state.last_error = exc
                if state.attempt > self.max_retries:
                    log_event(
                        logger,
                        "conflict.exhausted",
                        severity="WARNING",
                        target=label or None,
                        attempts=state.attempt,
                    )
                    raise ConflictExceeded(exc, attempts=state.attempt) from exc
                state.delay_s = self.retry_delay_s
                log_event(
                    logger,
                    "conflict.retry",
                    severity="WARNING",
                    target=label or None,
                    attempt=state.attempt,
                    max_retries=self.max_retries,
                    delay_s=state.delay_s,
                )
                await sleep(state.delay_s)
