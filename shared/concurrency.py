"""Concurrency helpers: keyed locks, retry backoff and background polling workers."""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


def retry_delay(attempt: int, base: float = 1.0, cap: float = 60.0) -> float:
    """Exponential backoff delay for the given attempt number, capped."""
    return min(base * 2 ** attempt, cap)


class PollingWorker:
    """Calls ``run_once`` every ``poll_interval`` seconds on a background task.

    An iteration that raises is logged and the loop carries on with the next
    one; only ``stop`` ends it.
    """

    name = "Polling worker"

    def __init__(self, poll_interval: float):
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        raise NotImplementedError

    async def start(self):
        if self.running:
            logger.warning(f"{self.name} already running")
            return

        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} started")

    async def stop(self):
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        logger.info(f"{self.name} stopped")

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception(f"{self.name} iteration failed")

            await asyncio.sleep(self.poll_interval)
