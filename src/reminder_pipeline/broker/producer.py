"""
Kafka producer for reminder messages.

Provides async publishing with:
- Durable writes (acks=all) keyed by task id
- Lazy connection setup through ConnectionState
- Circuit breaker protection against broker outages
- Fail-soft semantics: publish never raises to the caller
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from aiokafka import AIOKafkaProducer
from aiokafka.structs import ConsumerRecord

from reminder_pipeline.broker.connection import ConnectionState, ConnectionStatus
from reminder_pipeline.broker.delivery import MESSAGE_ID_HEADER, REDELIVERY_HEADER
from reminder_pipeline.common.exceptions import (
    CircuitOpenError,
    TimeoutError,
    classify_exception,
)
from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.common.resilience.circuit_breaker import (
    BROKER_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitState,
    get_circuit_breaker,
)
from reminder_pipeline.config import BrokerConfig
from reminder_pipeline.metrics import (
    record_message_produced,
    record_producer_error,
    update_circuit_breaker_state,
)
from reminder_pipeline.schemas.reminder import ReminderMessage

logger = logging.getLogger(__name__)

_CIRCUIT_STATE_CODES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


def _export_circuit_state(old: CircuitState, new: CircuitState) -> None:
    update_circuit_breaker_state("producer", _CIRCUIT_STATE_CODES[new])


class ReminderProducer:
    """
    Publishes reminder messages to the reminders topic.

    One aiokafka producer is shared by every caller; aiokafka serializes
    sends internally, and connection setup is serialized by ConnectionState.

    Usage:
        >>> producer = ReminderProducer(BrokerConfig.from_env())
        >>> await producer.start()
        >>> try:
        ...     accepted = await producer.publish(message)
        ... finally:
        ...     await producer.stop()
    """

    def __init__(
        self,
        config: BrokerConfig,
        circuit_breaker: Optional[CircuitBreaker] = None,
        connection: Optional[ConnectionState] = None,
    ):
        """
        Initialize the producer. No network activity happens until start()
        or the first publish.

        Args:
            config: Broker configuration
            circuit_breaker: Optional custom circuit breaker
            connection: Optional custom connection state
        """
        self.config = config
        self.topic = config.topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._circuit_breaker = circuit_breaker or get_circuit_breaker(
            "reminder_producer", BROKER_CIRCUIT_CONFIG, _export_circuit_state
        )
        self._connection = connection or ConnectionState(
            "producer",
            config.retry,
            failure_cooldown_seconds=config.failure_cooldown_seconds,
        )

        logger.info(
            "Initialized reminder producer",
            extra={
                "bootstrap_servers": config.bootstrap_servers,
                "topic": self.topic,
            },
        )

    @property
    def status(self) -> ConnectionStatus:
        return self._connection.status

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected and self._producer is not None

    async def start(self) -> bool:
        """
        Connect to the broker, retrying with backoff.

        Returns:
            True if connected; False if the attempts were exhausted
        """
        return await self._connection.ensure_connected(self._connect)

    async def _connect(self) -> None:
        producer = AIOKafkaProducer(
            acks=self.config.acks,
            value_serializer=lambda v: v,  # Serialization handled in publish()
            **self.config.client_kwargs(),
        )
        try:
            await producer.start()
        except Exception:
            await self._close_quietly(producer)
            raise
        self._producer = producer
        logger.info(
            "Reminder producer connected",
            extra={"bootstrap_servers": self.config.bootstrap_servers},
        )

    @staticmethod
    async def _close_quietly(producer: AIOKafkaProducer) -> None:
        try:
            await producer.stop()
        except Exception as e:
            log_exception(
                logger,
                e,
                "Error closing producer after failed start",
                level=logging.DEBUG,
                include_traceback=False,
            )

    async def stop(self) -> None:
        """
        Flush pending sends and close the connection.

        Safe to call multiple times.
        """
        if self._producer is None:
            logger.debug("Producer not started or already stopped")
            return

        logger.info("Stopping reminder producer")
        producer, self._producer = self._producer, None
        try:
            await producer.flush()
            await producer.stop()
            logger.info("Reminder producer stopped")
        except Exception as e:
            log_exception(logger, e, "Error stopping reminder producer")
        finally:
            self._connection.mark_disconnected()

    async def publish(self, message: ReminderMessage) -> bool:
        """
        Persist a reminder to the topic.

        Never raises: while the broker is unreachable the message is logged
        and dropped.

        Args:
            message: Reminder to publish

        Returns:
            True if the broker acknowledged the write
        """
        headers = [
            (MESSAGE_ID_HEADER, message.message_id.encode("utf-8")),
            ("content-type", b"application/json"),
            (REDELIVERY_HEADER, b"0"),
        ]
        return await self._send(
            key=str(message.task_id).encode("utf-8"),
            value=message.to_bytes(),
            headers=headers,
            task_id=message.task_id,
        )

    async def republish(self, record: ConsumerRecord, redelivery_count: int) -> bool:
        """
        Put a delivered record back on its topic for another attempt.

        The payload is sent unchanged; only the redelivery header is replaced.

        Returns:
            True if the broker acknowledged the write
        """
        headers = [
            (k, v) for k, v in (record.headers or ()) if k != REDELIVERY_HEADER
        ]
        headers.append((REDELIVERY_HEADER, str(redelivery_count).encode("ascii")))
        return await self._send(
            key=record.key,
            value=record.value or b"",
            headers=headers,
            topic=record.topic,
            redelivery_count=redelivery_count,
        )

    async def _send(
        self,
        key: Optional[bytes],
        value: bytes,
        headers: List[Tuple[str, bytes]],
        topic: Optional[str] = None,
        **log_context,
    ) -> bool:
        topic = topic or self.topic

        if not await self._connection.ensure_connected(self._connect) or self._producer is None:
            record_message_produced(topic, len(value), status="dropped")
            log_with_context(
                logger,
                logging.WARNING,
                "Broker unavailable, dropping message",
                topic=topic,
                connection_status=self._connection.status.value,
                **log_context,
            )
            return False

        producer = self._producer
        timeout = self.config.publish_timeout_seconds

        async def _do_send():
            try:
                return await asyncio.wait_for(
                    producer.send_and_wait(
                        topic,
                        value=value,
                        key=key,
                        headers=headers,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise TimeoutError(f"Publish exceeded {timeout}s", cause=e) from e

        try:
            metadata = await self._circuit_breaker.call_async(_do_send)
        except asyncio.CancelledError:
            raise
        except CircuitOpenError as e:
            record_message_produced(topic, len(value), status="dropped")
            log_with_context(
                logger,
                logging.WARNING,
                "Circuit open, dropping message",
                topic=topic,
                circuit_name=e.circuit_name,
                retry_after=round(e.retry_after, 1),
                **log_context,
            )
            return False
        except Exception as e:
            record_message_produced(topic, len(value), status="error")
            record_producer_error(topic, type(e).__name__)
            log_exception(
                logger,
                e,
                "Failed to publish message",
                level=logging.WARNING,
                include_traceback=False,
                topic=topic,
                error_category=classify_exception(e).value,
                **log_context,
            )
            return False

        record_message_produced(topic, len(value), status="success")
        log_with_context(
            logger,
            logging.DEBUG,
            "Message published",
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            **log_context,
        )
        return True


__all__ = [
    "ReminderProducer",
]
