"""Fire-and-forget execution of remote mutations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class RemoteDispatcher:
    """Runs remote calls as background tasks without awaiting them.

    The event loop only keeps weak references to tasks, so the dispatcher
    holds them until they finish. Failures are logged and never reach the
    caller; the next sync pass reconciles whatever did not land.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, description: str, factory: Callable[[], Awaitable[None]]) -> asyncio.Task[None]:
        """Schedule ``factory()`` on the running loop.

        Args:
            description: Short label used in logs, e.g. ``"trash m1"``.
            factory: Zero-argument callable returning the awaitable to run.

        Returns:
            The scheduled task.
        """

        async def runner() -> None:
            await factory()

        task = asyncio.get_running_loop().create_task(runner(), name=description)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("remote_call_dispatched", call=description)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight call to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("remote_call_cancelled", call=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("remote_call_failed", call=task.get_name(), error=str(exc))
        else:
            logger.debug("remote_call_completed", call=task.get_name())
