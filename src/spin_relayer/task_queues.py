"""
Task ordering primitives for chain submissions and event handling.

``SerialQueue`` runs submissions for one (chain, signer) pair strictly one at
a time, so two transactions never race for the same nonce. ``LatestTaskRunner``
coalesces bursts of events: while one task runs, only the most recently
enqueued task survives to run next.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .errors import is_connection_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[T]]


class SerialQueue:
    """
    FIFO runner that starts each task only after the previous one settled.

    A failing task never blocks or fails the tasks queued after it; its
    error is delivered only to whoever awaits the task returned by ``run``.
    """

    def __init__(self, name: str):
        self.name = name
        self._tail: asyncio.Task | None = None
        self._queued = 0
        self._completed = 0
        self._failed = 0

    def run(self, task: TaskFactory[T]) -> "asyncio.Task[T]":
        """
        Append a task to the queue.

        Args:
            task: Zero-argument coroutine function to run once all
                previously queued tasks have settled

        Returns:
            An asyncio task resolving to the result of ``task``
        """
        previous = self._tail
        self._queued += 1

        async def run_after_previous() -> T:
            if previous is not None and not previous.done():
                # asyncio.wait never raises the awaited task's error
                await asyncio.wait([previous])
            try:
                result = await task()
            except BaseException:
                self._failed += 1
                raise
            finally:
                self._queued -= 1
            self._completed += 1
            return result

        current = asyncio.create_task(run_after_previous(), name=f"{self.name}-serial")
        self._tail = current
        return current

    @property
    def pending(self) -> int:
        """Number of tasks queued or running."""
        return self._queued

    async def drain(self) -> None:
        """Wait until every task queued so far, and any queued meanwhile, has settled."""
        while self._tail is not None and not self._tail.done():
            await asyncio.wait([self._tail])

    def get_stats(self) -> dict[str, int]:
        return {
            'pending': self._queued,
            'completed': self._completed,
            'failed': self._failed,
        }


class LatestTaskRunner:
    """
    Coalescing runner that keeps at most one pending task.

    Enqueueing replaces any task that has not started yet. A running task is
    never cancelled; if newer tasks arrived while it ran, exactly one more run
    happens afterwards, for the newest of them.

    Errors raised by a task are logged and swallowed, except errors that
    ``is_fatal`` classifies as fatal, which are passed to ``on_fatal``.
    """

    def __init__(
        self,
        name: str,
        is_fatal: Callable[[BaseException], bool] = is_connection_error,
        on_fatal: Callable[[BaseException], Any] | None = None,
    ):
        """
        Initialize the runner.

        Args:
            name: Name used in log messages
            is_fatal: Classifier for errors that must escape the runner
            on_fatal: Callback receiving fatal errors
        """
        self.name = name
        self._is_fatal = is_fatal
        self._on_fatal = on_fatal
        self._pending: TaskFactory[Any] | None = None
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self.executed = 0
        self.superseded = 0
        self.failed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        return not self._idle.is_set()

    def enqueue(self, task: TaskFactory[Any]) -> bool:
        """
        Schedule a task, replacing any pending task that has not started.

        Args:
            task: Zero-argument coroutine function

        Returns:
            False if the runner is closed and the task was ignored
        """
        if self._closed:
            logger.debug(f"{self.name}: runner closed, ignoring task")
            return False

        if self._pending is not None:
            self.superseded += 1
        self._pending = task
        self._idle.clear()

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name=f"{self.name}-latest")
        return True

    def close(self) -> None:
        """Stop accepting new tasks. Already pending work still runs."""
        self._closed = True

    async def drain(self) -> None:
        """Wait until no task is running and none is pending."""
        await self._idle.wait()

    async def _work(self) -> None:
        try:
            while self._pending is not None:
                task, self._pending = self._pending, None
                try:
                    await task()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed += 1
                    if self._is_fatal(e):
                        logger.error(f"{self.name}: fatal task error: {e}")
                        if self._on_fatal is not None:
                            self._on_fatal(e)
                    else:
                        logger.error(f"{self.name}: task failed: {e}", exc_info=True)
                finally:
                    self.executed += 1
        finally:
            self._pending = None
            self._idle.set()

    def get_stats(self) -> dict[str, int]:
        return {
            'executed': self.executed,
            'superseded': self.superseded,
            'failed': self.failed,
        }
