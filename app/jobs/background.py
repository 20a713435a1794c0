"""
In-process background job queue.

Post-commit side effects of a workflow action (notification fan-out, work
order sync) are submitted here instead of being awaited in the request.
The queue is owned by the application lifespan; on shutdown ``drain`` waits
up to a timeout and cancels whatever is still running.
"""
import asyncio
import logging
from typing import Awaitable, Dict, Set

logger = logging.getLogger(__name__)


class BackgroundJobQueue:
    """Tracks fire-and-forget coroutines so they can be awaited and drained."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._names: Dict[asyncio.Task, str] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable, name: str) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it until done."""
        if self._closed:
            coro.close()
            raise RuntimeError(f"Job queue is closed; rejected job '{name}'")

        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        self._names[task] = name
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        name = self._names.pop(task, "job")
        if task.cancelled():
            logger.warning(f"Background job '{name}' was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background job '{name}' failed: {error!r}")
        else:
            logger.debug(f"Background job '{name}' completed")

    async def join(self) -> None:
        """Wait for every job submitted so far (including ones they submit)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, timeout: float) -> int:
        """
        Stop accepting jobs, wait up to ``timeout`` seconds, then cancel the
        rest. Returns the number of jobs that did not finish.
        """
        self._closed = True
        if not self._tasks:
            return 0

        logger.info(f"Draining {len(self._tasks)} background jobs (timeout {timeout}s)")
        done, not_done = await asyncio.wait(list(self._tasks), timeout=timeout)

        for task in not_done:
            logger.error(f"Background job '{self._names.get(task, 'job')}' did not finish before shutdown")
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
        return len(not_done)
