"""
Supervised fire-and-forget publishing.

The scanner can hand reminders to a PublishPool instead of awaiting each
broker write. A bounded queue feeds a fixed set of worker tasks; failures
are logged and counted, never raised to the submitter, and a worker that
dies unexpectedly is replaced.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from reminder_pipeline.broker.producer import ReminderProducer
from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.metrics import (
    record_publish_pool_rejection,
    update_publish_pool_depth,
)
from reminder_pipeline.schemas.reminder import ReminderMessage

logger = logging.getLogger(__name__)


class PublishPool:
    """
    Bounded background publisher.

    Example:
        >>> pool = PublishPool(producer, workers=2, queue_size=1000)
        >>> pool.start()
        >>> pool.submit(message)  # returns immediately
        >>> await pool.stop(drain=True)
    """

    def __init__(
        self,
        producer: ReminderProducer,
        workers: int = 2,
        queue_size: int = 1000,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        self._producer = producer
        self._worker_count = workers
        self._queue: "asyncio.Queue[ReminderMessage]" = asyncio.Queue(maxsize=queue_size)
        self._workers: Set[asyncio.Task] = set()
        self._task_counter = 0
        self._running = False

        self._published = 0
        self._failed = 0
        self._rejected = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Messages queued and not yet picked up by a worker."""
        return self._queue.qsize()

    def stats(self) -> Dict[str, int]:
        return {
            "published": self._published,
            "failed": self._failed,
            "rejected": self._rejected,
            "pending": self.pending,
            "workers": len(self._workers),
        }

    def start(self) -> None:
        """Spawn the worker tasks. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        for _ in range(self._worker_count):
            self._spawn_worker()
        log_with_context(
            logger,
            logging.INFO,
            "Publish pool started",
            workers=self._worker_count,
            queue_size=self._queue.maxsize,
        )

    def submit(self, message: ReminderMessage) -> bool:
        """
        Queue a message for publishing.

        Returns:
            False if the pool is stopped or the queue is full
        """
        if not self._running:
            return self._reject(message, "Publish pool not running")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return self._reject(message, "Publish queue full")
        update_publish_pool_depth(self._queue.qsize())
        return True

    def _reject(self, message: ReminderMessage, reason: str) -> bool:
        self._rejected += 1
        record_publish_pool_rejection()
        log_with_context(
            logger,
            logging.WARNING,
            f"{reason}, dropping reminder",
            task_id=message.task_id,
            queue_size=self._queue.qsize(),
        )
        return False

    def _spawn_worker(self) -> asyncio.Task:
        self._task_counter += 1
        task = asyncio.create_task(self._worker(), name=f"publish-worker-{self._task_counter}")
        self._workers.add(task)
        task.add_done_callback(self._on_worker_done)
        return task

    def _on_worker_done(self, task: asyncio.Task) -> None:
        self._workers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_exception(
                logger,
                exc,
                "Publish worker died",
                include_traceback=False,
                workers=len(self._workers),
            )
        if self._running:
            logger.warning(
                "Replacing publish worker",
                extra={"workers": len(self._workers)},
            )
            self._spawn_worker()

    async def _worker(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if await self._producer.publish(message):
                    self._published += 1
                else:
                    self._failed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed += 1
                log_exception(
                    logger,
                    e,
                    "Unexpected error publishing reminder",
                    task_id=message.task_id,
                )
            finally:
                self._queue.task_done()
                update_publish_pool_depth(self._queue.qsize())

    async def stop(self, drain: bool = True, timeout: Optional[float] = 30.0) -> None:
        """
        Stop accepting messages and shut the workers down.

        Args:
            drain: Wait for queued messages to be published first
            timeout: Upper bound on the drain wait, in seconds
        """
        if not self._running and not self._workers:
            return
        self._running = False

        if drain and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Publish pool drain timed out",
                    queue_size=self._queue.qsize(),
                )

        workers = list(self._workers)
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        update_publish_pool_depth(0)

        log_with_context(
            logger,
            logging.INFO,
            "Publish pool stopped",
            published_count=self._published,
            failed_count=self._failed,
            dropped_count=dropped,
        )


__all__ = [
    "PublishPool",
]
