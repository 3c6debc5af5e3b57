from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Share one in-flight coroutine among concurrent callers.

    The first caller starts the work as a task; everyone arriving while it
    runs awaits that same task and sees the same result or exception. The
    slot is released once the task finishes, so the next call starts fresh.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task[T]] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(factory())
            self._task.add_done_callback(self._release)
        # Shield so one abandoned waiter does not cancel the shared call
        return await asyncio.shield(self._task)

    def _release(self, task: asyncio.Task[T]) -> None:
        if self._task is task:
            self._task = None
        if not task.cancelled():
            # Mark the exception retrieved when every waiter has gone away
            task.exception()
