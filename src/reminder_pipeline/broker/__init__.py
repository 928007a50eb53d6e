"""
Broker client for the reminder pipeline.

Kafka stands in for a durable work queue: the producer persists reminders,
the consumer delivers them one at a time with explicit ack/nack.
"""

from reminder_pipeline.broker.connection import ConnectionState, ConnectionStatus
from reminder_pipeline.broker.consumer import DeliveryHandler, ReminderBrokerConsumer
from reminder_pipeline.broker.delivery import (
    MESSAGE_ID_HEADER,
    REDELIVERY_HEADER,
    Delivery,
    DeliveryOutcome,
)
from reminder_pipeline.broker.producer import ReminderProducer
from reminder_pipeline.broker.publish_pool import PublishPool

__all__ = [
    "ConnectionState",
    "ConnectionStatus",
    "Delivery",
    "DeliveryHandler",
    "DeliveryOutcome",
    "MESSAGE_ID_HEADER",
    "PublishPool",
    "REDELIVERY_HEADER",
    "ReminderBrokerConsumer",
    "ReminderProducer",
]
