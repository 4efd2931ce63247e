"""In-process background work.

Request handlers hand off slow work (oracle calls) here and return at once.
The returned task is the completion signal; tests await it instead of sleeping.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TaskQueue:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, key: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Run ``factory()`` in the background, at most once per key at a time.

        Never raises to the caller. If work for ``key`` is already in flight,
        the existing task is returned.
        """
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._run(key, factory), name=f"work:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    async def _run(self, key: str, factory: Callable[[], Awaitable[object]]) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background work %s failed", key)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until nothing is in flight, including work submitted meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if tasks:
            logger.info("Cancelled %d background tasks", len(tasks))
