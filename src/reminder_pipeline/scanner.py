"""
Overdue task scanner.

Periodically queries the task store for overdue, incomplete tasks and
publishes one reminder message per task found. The scanner never writes to
the store: a task that stays overdue is simply found again next cycle, and
the consumer's dedup cache keeps repeats from notifying twice.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.logging import generate_cycle_id, set_log_context
from reminder_pipeline.broker.producer import ReminderProducer
from reminder_pipeline.broker.publish_pool import PublishPool
from reminder_pipeline.common.exceptions import (
    PipelineError,
    StoreQueryError,
    TimeoutError,
    wrap_exception,
)
from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.config import ReminderConfig
from reminder_pipeline.metrics import record_scan_cycle
from reminder_pipeline.schemas.reminder import ReminderMessage, utc_now
from reminder_pipeline.store import OverdueTaskStore

logger = logging.getLogger(__name__)


class OverdueScanner:
    """
    Timed loop publishing reminders for overdue tasks.

    Failures are contained per cycle: a store error skips the cycle, a
    publish error skips the task. The loop itself only ends on shutdown.

    Example:
        >>> scanner = OverdueScanner(config.reminders, store, producer)
        >>> async with scanner:
        ...     await scanner.run()
    """

    def __init__(
        self,
        config: ReminderConfig,
        store: OverdueTaskStore,
        producer: ReminderProducer,
        publish_pool: Optional[PublishPool] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the scanner.

        Args:
            config: Reminder settings (intervals, store timeout)
            store: Source of overdue tasks
            producer: Broker producer; started and stopped with the scanner
            publish_pool: Optional pool for fire-and-forget publishing
            clock: Returns the current UTC time
        """
        self.config = config
        self._store = store
        self._producer = producer
        self._publish_pool = publish_pool
        self._clock = clock or utc_now

        self._running = False
        self._shutdown_event = asyncio.Event()

        # Stats
        self._total_scans = 0
        self._failed_scans = 0
        self._total_found = 0
        self._total_published = 0
        self._total_failed = 0
        self._last_scan_time: Optional[datetime] = None

        logger.info(
            "Initialized overdue scanner",
            extra={
                "scan_interval_minutes": config.scan_interval_minutes,
                "initial_delay_seconds": config.initial_delay_seconds,
                "fire_and_forget": publish_pool is not None,
            },
        )

    async def __aenter__(self) -> "OverdueScanner":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Connect the producer and start the publish pool.

        A broker that cannot be reached is not fatal; publishes fail soft
        until the connection recovers.
        """
        if self._running:
            return
        logger.info("Starting overdue scanner")
        if not await self._producer.start():
            logger.warning(
                "Broker not reachable at start-up, reminders will be dropped until it recovers",
                extra={"connection_status": self._producer.status.value},
            )
        if self._publish_pool is not None:
            self._publish_pool.start()
        self._running = True

    async def stop(self) -> None:
        """Ask the loop to exit once the in-flight scan finishes.

        The producer stays open until close(), so a scan still publishing
        keeps using the same connection.
        """
        logger.info("Stopping overdue scanner")
        self._running = False
        self._shutdown_event.set()

    async def close(self) -> None:
        """Stop the loop, drain pending publishes and close the producer."""
        await self.stop()
        if self._publish_pool is not None:
            await self._publish_pool.stop(drain=True)
        await self._producer.stop()
        logger.info("Overdue scanner stopped", extra=self.stats)

    async def _wait(self, seconds: float) -> bool:
        """Wait ``seconds`` or until shutdown. Returns True on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> None:
        """
        Main scan loop.

        Waits the initial delay, then scans every ``scan_interval_minutes``
        until stop() is called.
        """
        if not self._running:
            await self.start()

        set_log_context(stage="scanner")
        logger.info("Starting scan loop")

        if await self._wait(self.config.initial_delay_seconds):
            logger.info("Shutdown requested before first scan")
            return

        interval = self.config.scan_interval.total_seconds()
        while self._running and not self._shutdown_event.is_set():
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                logger.info("Scan loop cancelled")
                raise
            except Exception as e:
                self._failed_scans += 1
                log_exception(logger, e, "Error in scan cycle")

            if await self._wait(interval):
                break

        logger.info(
            "Scan loop ended",
            extra={
                "total_scans": self._total_scans,
                "published_count": self._total_published,
            },
        )

    async def scan_once(self, now: Optional[datetime] = None) -> int:
        """
        Execute a single scan cycle.

        Args:
            now: Scan time; defaults to the clock

        Returns:
            Number of reminders accepted for publishing
        """
        set_log_context(cycle_id=generate_cycle_id())
        now = now or self._clock()
        self._total_scans += 1
        self._last_scan_time = now
        scan_start = time.perf_counter()

        try:
            tasks = await self._query_store(now)
        except PipelineError as e:
            self._failed_scans += 1
            log_exception(
                logger,
                e,
                "Overdue task query failed, skipping cycle",
                level=logging.WARNING,
                include_traceback=False,
            )
            record_scan_cycle("store_error", 0, time.perf_counter() - scan_start)
            return 0
        query_duration_ms = (time.perf_counter() - scan_start) * 1000

        overdue = [task for task in tasks if task.is_overdue(now)]
        self._total_found += len(overdue)
        log_with_context(
            logger,
            logging.INFO,
            f"Found {len(overdue)} overdue task(s)",
            overdue_count=len(overdue),
        )

        published = 0
        failed = 0
        for task in overdue:
            if await self._publish_task(task, now):
                published += 1
            else:
                failed += 1

        self._total_published += published
        self._total_failed += failed
        duration = time.perf_counter() - scan_start
        record_scan_cycle("success" if not failed else "partial", len(overdue), duration)

        log_with_context(
            logger,
            logging.INFO,
            "Scan cycle completed",
            overdue_count=len(overdue),
            published_count=published,
            failed_count=failed,
            scan_duration_ms=round(duration * 1000, 2),
            query_duration_ms=round(query_duration_ms, 2),
        )
        return published

    async def _query_store(self, now: datetime):
        timeout = self.config.store_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._store.list_overdue_incomplete, now),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Overdue task query exceeded {timeout}s", cause=e
            ) from e
        except Exception as e:
            raise wrap_exception(e, StoreQueryError) from e

    async def _publish_task(self, task, now: datetime) -> bool:
        try:
            message = ReminderMessage.for_task(task, processed_at=now)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Skipping task with invalid reminder data",
                level=logging.WARNING,
                include_traceback=False,
                task_id=task.task_id,
            )
            return False

        if self._publish_pool is not None:
            return self._publish_pool.submit(message)

        try:
            accepted = await self._producer.publish(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(
                logger,
                e,
                "Unexpected error publishing reminder",
                task_id=task.task_id,
            )
            return False

        if accepted:
            log_with_context(
                logger,
                logging.DEBUG,
                "Reminder published",
                task_id=task.task_id,
                message_id=message.message_id,
            )
        return accepted

    @property
    def is_running(self) -> bool:
        """Check if scanner is running."""
        return self._running

    @property
    def stats(self) -> Dict[str, Any]:
        """Get current scanner statistics."""
        return {
            "running": self._running,
            "total_scans": self._total_scans,
            "failed_scans": self._failed_scans,
            "total_found": self._total_found,
            "total_published": self._total_published,
            "total_failed": self._total_failed,
            "last_scan_time": (
                self._last_scan_time.isoformat() if self._last_scan_time else None
            ),
        }


__all__ = [
    "OverdueScanner",
]
