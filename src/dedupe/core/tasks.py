"""Explicit handles for long-running background work.

The fetch loop, detection passes and the finish sequence run decoupled
from the call that triggered them. Each one is an asyncio.Task held by
BackgroundTaskRunner under a stable name (e.g. ``sync:<job_id>``). A
done-callback observes every outcome: failures are logged and handed to
the caller-supplied ``on_error`` coroutine, which records them into the
owning Job or Merge Record.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

from src.dedupe.core.errors import ConflictError

logger = structlog.get_logger(__name__)

ErrorRecorder = Callable[[BaseException], Awaitable[None]]


class BackgroundTaskRunner:
    """Owns named background tasks and the recorders of their failures."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._recorders: set[asyncio.Task] = set()

    def spawn(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        on_error: ErrorRecorder | None = None,
    ) -> asyncio.Task:
        """Schedule ``coro`` as a background task.

        Raises:
            ConflictError: A task with the same name is still running.
        """
        if self.is_running(name):
            coro.close()
            raise ConflictError(f"Task {name} is already running")

        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_done(name, t, on_error))
        logger.debug("tasks.spawned", task=name)
        return task

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def _on_done(
        self,
        name: str,
        task: asyncio.Task,
        on_error: ErrorRecorder | None,
    ) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

        if task.cancelled():
            logger.warning("tasks.cancelled", task=name)
            return

        exc = task.exception()
        if exc is None:
            logger.debug("tasks.completed", task=name)
            return

        logger.error("tasks.failed", task=name, error=str(exc), exc_info=exc)
        if on_error is None:
            return

        recorder = asyncio.ensure_future(on_error(exc))
        self._recorders.add(recorder)
        recorder.add_done_callback(lambda r: self._on_recorded(name, r))

    def _on_recorded(self, name: str, recorder: asyncio.Task) -> None:
        self._recorders.discard(recorder)
        if recorder.cancelled():
            return
        exc = recorder.exception()
        if exc is not None:
            logger.error(
                "tasks.failure_not_recorded", task=name, error=str(exc), exc_info=exc
            )

    async def drain(self) -> None:
        """Wait until every task and failure recorder has settled.

        Tasks spawned by other tasks while draining are awaited as well.
        """
        while self._tasks or self._recorders:
            pending = list(self._tasks.values()) + list(self._recorders)
            await asyncio.gather(*pending, return_exceptions=True)
            # Let done-callbacks run so finished handles are released
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel everything still running and wait for it to unwind."""
        pending = list(self._tasks.values()) + list(self._recorders)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._recorders.clear()
        logger.info("tasks.shutdown", cancelled=len(pending))
