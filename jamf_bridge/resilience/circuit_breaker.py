"""
Three-state circuit breaker, keyed per logical target.

CLOSED    -> OPEN       after `failure_threshold` consecutive counted failures
OPEN      -> HALF_OPEN  once `reset_timeout_s` has elapsed (evaluated lazily)
HALF_OPEN -> CLOSED     after `half_open_requests` consecutive trial successes
HALF_OPEN -> OPEN       on any counted failure

Business rejections (4xx other than 429) prove the backend is answering and
are not counted as failures.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..common.errors import ApiRequestError, CircuitOpen
from ..common.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def counts_as_failure(exc: BaseException) -> bool:
    if isinstance(exc, ApiRequestError) and exc.status_code is not None:
        return not (400 <= exc.status_code < 500) or exc.status_code == 429
    return True


@dataclass(frozen=True)
class BreakerOptions:
    failure_threshold: int = 5
    reset_timeout_s: float = 60.0
    half_open_requests: int = 3

    @classmethod
    def from_settings(cls, settings: Any) -> "BreakerOptions":
        return cls(
            failure_threshold=int(settings.JAMF_CIRCUIT_FAILURE_THRESHOLD),
            reset_timeout_s=float(settings.circuit_reset_timeout_s),
            half_open_requests=int(settings.JAMF_CIRCUIT_HALF_OPEN_REQUESTS),
        )


class CircuitBreaker:
    def __init__(
        self,
        key: str,
        options: Optional[BreakerOptions] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self.options = options or BreakerOptions()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_admitted = 0
        self._trial_successes = 0

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._retry_in_s() <= 0:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _retry_in_s(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.options.reset_timeout_s - (self._clock() - self._opened_at)

    def _transition(self, new_state: CircuitState) -> None:
        prev = self._state
        self._state = new_state
        self._trial_admitted = 0
        self._trial_successes = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.CLOSED:
            self._opened_at = None
            self._failure_count = 0
        log_event(
            logger,
            "circuit.transition",
            severity="WARNING" if new_state is CircuitState.OPEN else "INFO",
            breaker=self.key,
            from_state=prev.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )

    def _admit(self) -> None:
        state = self.state
        if state is CircuitState.OPEN:
            raise CircuitOpen(self.key, retry_in_s=max(0.0, self._retry_in_s()))
        if state is CircuitState.HALF_OPEN:
            if self._trial_admitted >= self.options.half_open_requests:
                raise CircuitOpen(self.key, retry_in_s=0.0)
            self._trial_admitted += 1

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._trial_successes += 1
            if self._trial_successes >= self.options.half_open_requests:
                self._transition(CircuitState.CLOSED)
            return
        self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failure_count >= self.options.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            result = await fn()
        except Exception as exc:
            if counts_as_failure(exc):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._failure_count = 0
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        return {
            "state": state.value,
            "failure_count": self._failure_count,
            "retry_in_s": round(max(0.0, self._retry_in_s()), 3) if state is CircuitState.OPEN else None,
        }


class BreakerRegistry:
    """
    Owns every breaker for one client instance. Injected into the transport.
    """

    def __init__(
        self,
        options: Optional[BreakerOptions] = None,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or BreakerOptions()
        self.enabled = bool(enabled)
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, self.options, clock=self._clock)
            self._breakers[key] = breaker
        return breaker

    async def call(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        if not self.enabled:
            return await fn()
        return await self.get(key).call(fn)

    def state(self, key: str) -> CircuitState:
        return self.get(key).state

    def failure_count(self, key: str) -> int:
        return self.get(key).failure_count

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            for breaker in self._breakers.values():
                breaker.reset()
        elif key in self._breakers:
            self._breakers[key].reset()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: breaker.snapshot() for key, breaker in sorted(self._breakers.items())}
