"""
RequestDeduplicator - shares one in-flight coroutine between concurrent callers.

The first caller for a key starts the work; callers arriving while it runs
await the same task. Once the task settles the key is released, so a later
caller starts fresh work. Used by the facade for identical cached reads and
by the credential manager so N simultaneous 401s cause a single refresh.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    """Statistics for request deduplication."""

    started: int = 0  # work actually started
    joined: int = 0  # callers that awaited someone else's work
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        total = self.started + self.joined
        if total == 0:
            return 0.0
        return self.joined / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }


class RequestDeduplicator:
    """
    Usage:
        dedup = RequestDeduplicator()
        result = await dedup.dedupe(spec.cache_key(), lambda: fetch(spec))
    """

    def __init__(self, name: str = "dedup", debug: bool = False):
        self._name = name
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run `work` for `key`, or join the run already in flight."""
        async with self._lock:
            task = self._tasks.get(key)
            if task is None:
                task = asyncio.create_task(self._run(key, work))
                self._tasks[key] = task
                self._stats.started += 1
                self._log(f"START {key[:60]}")
            else:
                self._stats.joined += 1
                self._log(f"JOIN {key[:60]}")

        # a cancelled waiter must not cancel the work other callers share
        return await asyncio.shield(task)

    def is_in_flight(self, key: str) -> bool:
        return key in self._tasks

    async def _run(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        try:
            return await work()
        finally:
            async with self._lock:
                self._tasks.pop(key, None)

    async def cancel_all(self) -> int:
        """Cancel all in-flight work."""
        async with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log(f"CANCEL_ALL {len(tasks)}")
        return len(tasks)

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._tasks)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[{self._name}] {message}")
