"""
Cooperative cancellation for in-flight requests.

A token is handed to a facade or transport call; cancelling it aborts the
pending network call and prevents any further retry from being scheduled.
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> tuple[bool, T | None]:
        """Await `awaitable` unless the token fires first.

        Returns (completed, result). When the token wins, the awaitable's
        task is cancelled and (False, None) is returned. Exceptions raised
        by the awaitable propagate.
        """
        work = asyncio.ensure_future(awaitable)
        if self.cancelled:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            return False, None

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if work.cancelled():
            return False, None
        return True, work.result()
