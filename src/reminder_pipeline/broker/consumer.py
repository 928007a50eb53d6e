"""
Kafka consumer with explicit per-message acknowledgement.

Provides queue-style consumption on top of aiokafka:
- Manual offset commit; auto commit is disabled
- At most ``prefetch_count`` unsettled deliveries in flight
- ack / nack(requeue) / nack(discard) settlement through ``Delivery``
- Offsets committed only up to the highest contiguous settled record of
  each partition, so nothing is lost if the process dies mid-batch
- Lazy connection with backoff and cooldown through ConnectionState
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import ConsumerRecord, TopicPartition

from reminder_pipeline.broker.connection import ConnectionState, ConnectionStatus
from reminder_pipeline.broker.delivery import Delivery, DeliveryOutcome
from reminder_pipeline.broker.producer import ReminderProducer
from reminder_pipeline.common.exceptions import BrokerUnavailableError, classify_exception
from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.config import BrokerConfig
from reminder_pipeline.metrics import (
    message_processing_duration_seconds,
    record_delivery_outcome,
    record_processing_error,
    update_assigned_partitions,
)

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[Delivery], Awaitable[None]]

# Floor for the pause after a rewound batch
MIN_REWIND_BACKOFF_SECONDS = 0.5


class ReminderBrokerConsumer:
    """
    Consumes the reminders topic and hands each record to a handler.

    A requeued delivery is written back to the topic with its redelivery
    count incremented, then its offset is committed like an ack. If the
    requeue write fails, the partition is rewound to that record so it is
    fetched again.

    Usage:
        >>> consumer = ReminderBrokerConsumer(config, producer, prefetch_count=10)
        >>> async def handle(delivery):
        ...     delivery.ack()
        >>> await consumer.consume(handle)  # runs until stop()
    """

    def __init__(
        self,
        config: BrokerConfig,
        producer: ReminderProducer,
        prefetch_count: int = 10,
        group_id: Optional[str] = None,
        connection: Optional[ConnectionState] = None,
        poll_timeout_ms: int = 1000,
    ):
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be at least 1")

        self.config = config
        self.topic = config.topic
        self.consumer_group = group_id or config.consumer_group
        self.prefetch_count = prefetch_count
        self.poll_timeout_ms = poll_timeout_ms
        self._producer = producer
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._connection = connection or ConnectionState(
            "consumer",
            config.retry,
            failure_cooldown_seconds=config.failure_cooldown_seconds,
        )
        self._semaphore = asyncio.Semaphore(prefetch_count)
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._assigned_count = 0

        log_with_context(
            logger,
            logging.INFO,
            "Initialized reminder broker consumer",
            topic=self.topic,
            consumer_group=self.consumer_group,
            bootstrap_servers=config.bootstrap_servers,
        )

    @property
    def status(self) -> ConnectionStatus:
        return self._connection.status

    @property
    def is_running(self) -> bool:
        """Check if the consume loop is active."""
        return self._running

    async def _connect(self) -> None:
        consumer = AIOKafkaConsumer(
            self.topic,
            group_id=self.consumer_group,
            enable_auto_commit=False,
            auto_offset_reset=self.config.auto_offset_reset,
            max_poll_records=self.prefetch_count,
            session_timeout_ms=self.config.session_timeout_ms,
            max_poll_interval_ms=self.config.max_poll_interval_ms,
            **self.config.client_kwargs(),
        )
        try:
            await consumer.start()
        except Exception:
            try:
                await consumer.stop()
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Error closing consumer after failed start",
                    level=logging.DEBUG,
                    include_traceback=False,
                )
            raise
        self._consumer = consumer
        self._assigned_count = 0

    async def _close(self) -> None:
        if self._consumer is None:
            return
        consumer, self._consumer = self._consumer, None
        try:
            await consumer.stop()
            logger.info("Reminder broker consumer stopped")
        except Exception as e:
            log_exception(logger, e, "Error stopping reminder broker consumer")
        finally:
            self._connection.mark_disconnected()
            update_assigned_partitions(self.consumer_group, 0)

    async def _pause(self, seconds: float) -> None:
        """Sleep, returning early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def consume(self, handler: DeliveryHandler) -> None:
        """
        Fetch and dispatch records until stop() is called.

        Raises:
            BrokerUnavailableError: If the connection permanently failed and
                re-attempts are disabled
        """
        if self._running:
            logger.warning("Consumer already running, ignoring duplicate consume call")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        logged_waiting_for_assignment = False
        rewind_streak = 0

        log_with_context(
            logger,
            logging.INFO,
            "Starting reminder consumption loop",
            topic=self.topic,
            consumer_group=self.consumer_group,
        )

        try:
            while self._running:
                if not await self._connection.ensure_connected(self._connect):
                    await self._wait_for_connection()
                    continue

                assignment = self._consumer.assignment()
                if not assignment:
                    # getmany() can block past timeout_ms during a rebalance
                    if not logged_waiting_for_assignment:
                        log_with_context(
                            logger,
                            logging.INFO,
                            "Waiting for partition assignment",
                            consumer_group=self.consumer_group,
                            topic=self.topic,
                        )
                        logged_waiting_for_assignment = True
                    await self._pause(0.5)
                    continue

                if len(assignment) != self._assigned_count:
                    self._assigned_count = len(assignment)
                    update_assigned_partitions(self.consumer_group, self._assigned_count)
                    log_with_context(
                        logger,
                        logging.INFO,
                        "Partition assignment received",
                        consumer_group=self.consumer_group,
                        partition_count=self._assigned_count,
                    )
                logged_waiting_for_assignment = False

                try:
                    data = await self._consumer.getmany(
                        timeout_ms=self.poll_timeout_ms,
                        max_records=self.prefetch_count,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Error fetching records, reconnecting",
                        level=logging.WARNING,
                        error_category=classify_exception(e).value,
                    )
                    await self._close()
                    await self._pause(1)
                    continue

                if not data:
                    continue

                if await self._process_batch(data, handler):
                    # Rewound records come straight back; wait for the broker
                    rewind_streak += 1
                    delay = max(
                        self.config.retry.delay_for(rewind_streak),
                        MIN_REWIND_BACKOFF_SECONDS,
                    )
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "Requeue failed, backing off before next fetch",
                        consumer_group=self.consumer_group,
                        rewind_streak=rewind_streak,
                        delay_seconds=round(delay, 2),
                    )
                    await self._pause(delay)
                else:
                    rewind_streak = 0

        except asyncio.CancelledError:
            logger.info("Consumption loop cancelled")
            raise
        finally:
            self._running = False
            await self._close()

    async def _wait_for_connection(self) -> None:
        if self._connection.status != ConnectionStatus.PERMANENTLY_FAILED:
            await self._pause(1)
            return

        remaining = self._connection.seconds_until_retry()
        if remaining is None:
            raise BrokerUnavailableError(
                "Broker consumer connection permanently failed and re-attempts are disabled",
                context={"topic": self.topic, "consumer_group": self.consumer_group},
            )
        log_with_context(
            logger,
            logging.WARNING,
            "Broker unavailable, waiting before next connection cycle",
            delay_seconds=round(remaining, 1),
        )
        await self._pause(max(remaining, 0.1))

    async def _process_batch(
        self,
        data: Dict[TopicPartition, List[ConsumerRecord]],
        handler: DeliveryHandler,
    ) -> bool:
        """
        Dispatch a fetched batch, settle every delivery, then commit.

        Returns:
            True if any partition was rewound to an unsettled record
        """
        deliveries = {
            tp: [Delivery(record) for record in records]
            for tp, records in data.items()
        }
        await asyncio.gather(
            *(
                self._dispatch(delivery, handler)
                for batch in deliveries.values()
                for delivery in batch
            )
        )

        offsets: Dict[TopicPartition, int] = {}
        rewinds: Dict[TopicPartition, int] = {}
        for tp, batch in deliveries.items():
            for delivery in sorted(batch, key=lambda d: d.offset):
                if not await self._settle(delivery):
                    # Later records are fetched again with this one
                    rewinds[tp] = delivery.offset
                    break
                offsets[tp] = delivery.offset + 1

        await self._commit(offsets)
        for tp, offset in rewinds.items():
            log_with_context(
                logger,
                logging.WARNING,
                "Rewinding partition to unsettled record",
                topic=tp.topic,
                partition=tp.partition,
                offset=offset,
            )
            self._consumer.seek(tp, offset)
        return bool(rewinds)

    async def _dispatch(self, delivery: Delivery, handler: DeliveryHandler) -> None:
        async with self._semaphore:
            start_time = time.perf_counter()
            try:
                await handler(delivery)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                category = classify_exception(e)
                record_processing_error(self.topic, self.consumer_group, category.value)
                log_exception(
                    logger,
                    e,
                    "Unhandled error in delivery handler",
                    topic=delivery.topic,
                    partition=delivery.partition,
                    offset=delivery.offset,
                    error_category=category.value,
                )
            finally:
                message_processing_duration_seconds.labels(
                    topic=self.topic, consumer_group=self.consumer_group
                ).observe(time.perf_counter() - start_time)

            if not delivery.is_settled:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Delivery not settled by handler, requeueing",
                    topic=delivery.topic,
                    partition=delivery.partition,
                    offset=delivery.offset,
                )
                delivery.nack(requeue=True)

    async def _settle(self, delivery: Delivery) -> bool:
        """
        Carry out a delivery's outcome on the broker.

        Returns:
            True if the record's offset may be committed
        """
        outcome = delivery.outcome
        record_delivery_outcome(self.topic, self.consumer_group, outcome.value)

        if outcome == DeliveryOutcome.NACK_DISCARD:
            log_with_context(
                logger,
                logging.WARNING,
                "Discarding rejected message",
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
                message_id=delivery.message_id,
            )
            return True

        if outcome == DeliveryOutcome.NACK_REQUEUE:
            redelivery_count = delivery.redelivery_count + 1
            requeued = await self._producer.republish(delivery.record, redelivery_count)
            log_with_context(
                logger,
                logging.INFO if requeued else logging.WARNING,
                "Message requeued" if requeued else "Requeue failed, record will be fetched again",
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
                message_id=delivery.message_id,
                redelivery_count=redelivery_count,
            )
            return requeued

        return True

    async def _commit(self, offsets: Dict[TopicPartition, int]) -> None:
        if not offsets or self._consumer is None:
            return
        try:
            await self._consumer.commit(offsets)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Uncommitted records are redelivered after the rebalance
            log_exception(
                logger,
                e,
                "Offset commit failed",
                level=logging.WARNING,
                include_traceback=False,
                consumer_group=self.consumer_group,
            )

    async def stop(self) -> None:
        """
        Stop consuming. The loop finishes the batch in hand, commits, and
        closes the connection.

        Safe to call multiple times.
        """
        if not self._running:
            logger.debug("Consumer not running or already stopped")
            return
        logger.info("Stopping reminder broker consumer")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()


__all__ = [
    "DeliveryHandler",
    "ReminderBrokerConsumer",
]
