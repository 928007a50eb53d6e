"""
Reminder consumer.

Turns delivered reminder messages into notifications, at most once per
task per dedup window:

    Received -> Duplicate          -> ack
             -> Fresh              -> notify -> mark_processed -> ack
             -> ProcessingFailed   -> nack (requeue), cache untouched
             -> Malformed          -> nack (discard)
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from reminder_pipeline.broker.consumer import ReminderBrokerConsumer
from reminder_pipeline.broker.delivery import Delivery
from reminder_pipeline.common.exceptions import MalformedMessageError, classify_exception
from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.config import ReminderConfig
from reminder_pipeline.dedup import DedupCache
from reminder_pipeline.metrics import record_processing_error
from reminder_pipeline.notifier import ReminderNotifier
from reminder_pipeline.schemas.reminder import ReminderMessage, utc_now
from reminder_pipeline.store import ReminderLog

logger = logging.getLogger(__name__)

REMINDER_STATUS_PROCESSED = "Processed"


class ReminderOutcome(Enum):
    """Result of handling one delivery."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    MALFORMED = "malformed"


class ReminderConsumer:
    """
    Processes reminder deliveries from the broker.

    The dedup cache is owned by this consumer: only ``handle`` reads and
    marks it, and ``run`` drives its sweeper alongside the consume loop.

    Usage:
        >>> consumer = ReminderConsumer(config.reminders, broker_consumer)
        >>> await consumer.run()  # until stop()
    """

    def __init__(
        self,
        config: ReminderConfig,
        broker_consumer: ReminderBrokerConsumer,
        dedup: Optional[DedupCache] = None,
        notifier: Optional[ReminderNotifier] = None,
        reminder_log: Optional[ReminderLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            config: Reminder settings (dedup window, sweep interval)
            broker_consumer: Source of deliveries
            dedup: Optional cache; built from the configured window if None
            notifier: Optional notifier; logs the reminder if None
            reminder_log: Optional durable record of processed reminders
            clock: Returns the current UTC time
        """
        self.config = config
        self._broker_consumer = broker_consumer
        self._dedup = dedup or DedupCache(window=config.dedup_window)
        self._notifier = notifier or ReminderNotifier()
        self._reminder_log = reminder_log
        self._clock = clock or utc_now

        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._sweeper_task: Optional[asyncio.Task] = None
        self._counts: Dict[ReminderOutcome, int] = {o: 0 for o in ReminderOutcome}

    @property
    def dedup(self) -> DedupCache:
        return self._dedup

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, int]:
        stats = {outcome.value: count for outcome, count in self._counts.items()}
        stats["cache_size"] = len(self._dedup)
        return stats

    async def handle(self, delivery: Delivery) -> ReminderOutcome:
        """Settle one delivery according to the reminder state machine."""
        outcome = await self._handle(delivery)
        self._counts[outcome] += 1
        return outcome

    async def _handle(self, delivery: Delivery) -> ReminderOutcome:
        try:
            message = ReminderMessage.from_bytes(delivery.body)
        except MalformedMessageError as e:
            log_exception(
                logger,
                e,
                "Discarding malformed reminder message",
                level=logging.WARNING,
                include_traceback=False,
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
                message_id=delivery.message_id,
            )
            delivery.nack(requeue=False)
            return ReminderOutcome.MALFORMED

        start_time = time.perf_counter()

        # No awaits between the dedup check and the mark: deliveries for the
        # same task handled concurrently on this loop cannot both notify.
        if not self._dedup.should_process(message.task_id, self._clock()):
            log_with_context(
                logger,
                logging.DEBUG,
                "Skipping duplicate reminder",
                task_id=message.task_id,
                message_id=delivery.message_id,
                redelivery_count=delivery.redelivery_count,
            )
            delivery.ack()
            return ReminderOutcome.DUPLICATE

        try:
            self._notifier.notify(message)
        except Exception as e:
            category = classify_exception(e)
            record_processing_error(
                delivery.topic, self._broker_consumer.consumer_group, category.value
            )
            log_exception(
                logger,
                e,
                "Error processing reminder, requeueing",
                task_id=message.task_id,
                message_id=delivery.message_id,
                redelivery_count=delivery.redelivery_count,
                error_category=category.value,
            )
            delivery.nack(requeue=True)
            return ReminderOutcome.FAILED

        sent_at = self._clock()
        self._dedup.mark_processed(message.task_id, sent_at)
        delivery.ack()

        log_with_context(
            logger,
            logging.INFO,
            "Successfully processed reminder",
            task_id=message.task_id,
            message_id=delivery.message_id,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

        if self._reminder_log is not None:
            await self._record_reminder(message, sent_at)
        return ReminderOutcome.PROCESSED

    async def _record_reminder(self, message: ReminderMessage, sent_at: datetime) -> None:
        """Best-effort write to the reminder log; the delivery is already acked."""
        try:
            await asyncio.to_thread(
                self._reminder_log.record_reminder,
                message.task_id,
                sent_at,
                REMINDER_STATUS_PROCESSED,
                f"Reminder for '{message.title}' sent to {message.assignee_email}",
            )
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to record reminder",
                level=logging.WARNING,
                include_traceback=False,
                task_id=message.task_id,
            )

    async def run(self) -> None:
        """
        Consume reminders until stop() is called.

        The dedup sweeper runs for as long as the consume loop does.
        """
        if self._running:
            logger.warning("Reminder consumer already running, ignoring duplicate run")
            return

        self._running = True
        self._shutdown_event = asyncio.Event()
        self._sweeper_task = asyncio.create_task(
            self._dedup.run_sweeper(
                self._shutdown_event,
                interval=self.config.sweep_interval,
                clock=self._clock,
            ),
            name="dedup-sweeper",
        )
        log_with_context(
            logger,
            logging.INFO,
            "Reminder consumer started",
            topic=self._broker_consumer.topic,
            consumer_group=self._broker_consumer.consumer_group,
        )

        try:
            await self._broker_consumer.consume(self.handle)
        finally:
            self._running = False
            self._shutdown_event.set()
            await self._stop_sweeper()
            logger.info("Reminder consumer stopped", extra={**self.stats})

    async def _stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        task, self._sweeper_task = self._sweeper_task, None
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Dedup sweeper did not stop in time")
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def stop(self) -> None:
        """Request shutdown. Safe to call multiple times."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        await self._broker_consumer.stop()


__all__ = [
    "REMINDER_STATUS_PROCESSED",
    "ReminderConsumer",
    "ReminderOutcome",
]
