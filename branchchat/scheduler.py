from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .responses import generate_response


class ResponseScheduler:
    """Delayed reply timers owned by one chat view.

    ``schedule`` returns a task that waits ``delay`` seconds and then produces
    the simulated reply.  ``close`` cancels every timer that has not fired so
    a view that has gone away is never updated afterwards.  ``spawn`` tracks
    background work (response persistence) that should outlive the caller's
    await but can still be joined in tests.
    """

    def __init__(
        self,
        delay: float,
        generate: Callable[[], str] = generate_response,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.delay = delay
        self._generate = generate
        self._logger = logger or logging.getLogger(__name__)
        self._timers: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._timers)

    async def _reply_after_delay(self, message_id: int) -> str:
        await asyncio.sleep(self.delay)
        text = self._generate()
        self._logger.debug("Simulated reply ready for message %s", message_id)
        return text

    def schedule(self, message_id: int) -> "asyncio.Task[str]":
        if self._closed:
            raise RuntimeError("Response scheduler is closed")
        task = asyncio.get_running_loop().create_task(self._reply_after_delay(message_id))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def spawn(self, work: Awaitable[None]) -> "asyncio.Task[None]":
        task = asyncio.ensure_future(work)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def join(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def close(self) -> None:
        self._closed = True
        cancelled = 0
        for task in list(self._timers):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            self._logger.info("Cancelled %d pending reply timer(s)", cancelled)


__all__ = ["ResponseScheduler"]
