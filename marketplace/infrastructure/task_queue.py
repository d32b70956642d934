"""
In-process side-effect queue.

Everything that talks to the outside world after a lifecycle transition
(notification delivery, processor refunds and transfers) goes through here
instead of being awaited inline:

- enqueue() never blocks and never raises: a full queue logs and drops
- one worker task drains the queue, retrying failures with exponential
  backoff up to max_attempts
- counters are exposed through get_stats() (reported at /health)

Tasks are enqueued from Unit of Work post-commit hooks, so a rolled-back
transition never produces a side effect. Delivery has no ordering guarantee
and no cancellation: once enqueued, a task runs regardless of later state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from marketplace.config import settings

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class QueuedTask:
    """A named side effect. The factory is called once per attempt."""
    name: str
    factory: TaskFactory
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TaskQueue:
    """
    Bounded asyncio queue with a single retrying worker.

    Usage:
        queue = TaskQueue(max_size=1000)
        await queue.start()
        queue.enqueue("refund:item_123", lambda: client.create_refund(...))
        ...
        await queue.stop()
    """

    def __init__(
        self,
        max_size: int = 1000,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        name: str = "side_effects"
    ):
        """
        Args:
            max_size: Queue bound; enqueue beyond it drops the task
            max_attempts: Attempts per task before it is counted as failed
            backoff_seconds: Base delay, doubled after every failed attempt
            name: Queue name for logging
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._queue: "asyncio.Queue[QueuedTask]" = asyncio.Queue(maxsize=max_size)
        self._max_size = max_size
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._name = name
        self._worker: Optional[asyncio.Task] = None
        self._pending_retries: Set[asyncio.Task] = set()

        self._enqueued = 0
        self._succeeded = 0
        self._retried = 0
        self._failed = 0
        self._dropped = 0

    def enqueue(self, name: str, factory: TaskFactory) -> bool:
        """
        Add a task without waiting.

        Returns:
            True if queued, False if the queue was full and the task dropped
        """
        return self._put(QueuedTask(name=name, factory=factory))

    def _put(self, task: QueuedTask) -> bool:
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.error(f"❌ {self._name}: queue full ({self._max_size}), dropped task '{task.name}'")
            return False
        if task.attempts == 0:
            self._enqueued += 1
        logger.debug(f"{self._name}: queued '{task.name}' (attempt {task.attempts + 1})")
        return True

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._run_worker())
        logger.info(
            f"📬 {self._name} worker started - max {self._max_size} queued, "
            f"{self._max_attempts} attempt(s) per task"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Give queued tasks `timeout` seconds to finish, then cancel the worker."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️  {self._name}: {self._queue.qsize()} task(s) still queued at shutdown")

        for retry in list(self._pending_retries):
            retry.cancel()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(f"✅ {self._name} worker stopped")

    async def join(self) -> None:
        """Wait until the queue is empty and no retry is scheduled."""
        while True:
            await self._queue.join()
            if not self._pending_retries:
                return
            await asyncio.gather(*list(self._pending_retries), return_exceptions=True)

    async def _run_worker(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._execute(task)
            finally:
                self._queue.task_done()

    async def _execute(self, task: QueuedTask) -> None:
        task.attempts += 1
        try:
            await task.factory()
        except Exception as e:
            if task.attempts >= self._max_attempts:
                self._failed += 1
                logger.error(
                    f"❌ {self._name}: task '{task.name}' failed after {task.attempts} attempt(s): {e}",
                    exc_info=True
                )
                return

            delay = self._backoff_seconds * (2 ** (task.attempts - 1))
            self._retried += 1
            logger.warning(
                f"⚠️  {self._name}: task '{task.name}' failed (attempt {task.attempts}/{self._max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            retry = asyncio.create_task(self._retry_later(task, delay))
            self._pending_retries.add(retry)
            retry.add_done_callback(self._pending_retries.discard)
            return

        self._succeeded += 1
        logger.debug(f"✅ {self._name}: task '{task.name}' done")

    async def _retry_later(self, task: QueuedTask, delay: float) -> None:
        await asyncio.sleep(delay)
        self._put(task)

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def get_stats(self) -> Dict:
        return {
            "name": self._name,
            "running": self.running,
            "size": self.size,
            "max_size": self._max_size,
            "enqueued": self._enqueued,
            "succeeded": self._succeeded,
            "retried": self._retried,
            "failed": self._failed,
            "dropped": self._dropped,
        }


# Global side-effect queue (created on first use so it binds to the running loop)
_task_queue: Optional[TaskQueue] = None


def get_task_queue() -> TaskQueue:
    global _task_queue
    if _task_queue is None:
        _task_queue = TaskQueue(
            max_size=settings.task_queue_max_size,
            max_attempts=settings.task_max_attempts,
            backoff_seconds=settings.task_retry_backoff_seconds,
        )
    return _task_queue


def reset_task_queue() -> None:
    """Forget the global queue (tests create one per event loop)."""
    global _task_queue
    _task_queue = None
