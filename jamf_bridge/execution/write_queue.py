from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, TypeVar

from ..common.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WriteSerializationQueue:
    """
    At most one in-flight write per resource key.

    - FIFO per key (asyncio.Lock wakes waiters in arrival order)
    - different keys never block each other
    - idle keys are dropped so the table does not grow with every id ever written
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def pending(self, key: str) -> int:
        return self._waiters.get(key, 0)

    async def run_exclusive(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        if self._waiters[key] > 1:
            log_event(logger, "write_queue.waiting", severity="DEBUG", key=key, queued=self._waiters[key] - 1)
        try:
            async with lock:
                return await fn()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]
