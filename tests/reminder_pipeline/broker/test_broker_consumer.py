"""Tests for ReminderBrokerConsumer settlement and commit behavior."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.structs import TopicPartition

from reminder_pipeline.broker.connection import ConnectionState
from reminder_pipeline.broker.consumer import ReminderBrokerConsumer
from reminder_pipeline.broker.delivery import DeliveryOutcome
from reminder_pipeline.common.exceptions import BrokerUnavailableError
from reminder_pipeline.common.resilience.retry import RetryConfig
from reminder_pipeline.config import BrokerConfig

TP0 = TopicPartition("task.reminders", 0)
TP1 = TopicPartition("task.reminders", 1)


@pytest.fixture
def producer():
    mock = MagicMock()
    mock.republish = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def kafka_consumer():
    """Connected aiokafka consumer stand-in."""
    mock = MagicMock()
    mock.commit = AsyncMock()
    mock.start = AsyncMock()
    mock.stop = AsyncMock()
    return mock


@pytest.fixture
def consumer(broker_config, producer, kafka_consumer):
    consumer = ReminderBrokerConsumer(broker_config, producer, prefetch_count=4)
    consumer._consumer = kafka_consumer
    return consumer


def _batch(make_record, offsets, partition=0, redelivery_count=None):
    return [
        make_record(b"{}", offset=o, partition=partition, redelivery_count=redelivery_count)
        for o in offsets
    ]


class TestProcessBatch:
    """Tests for dispatch, settle and commit of one fetched batch."""

    async def test_acked_batch_commits_next_offset(self, consumer, kafka_consumer, make_record):
        async def handler(delivery):
            delivery.ack()

        rewound = await consumer._process_batch({TP0: _batch(make_record, [5, 6, 7])}, handler)

        assert rewound is False
        kafka_consumer.commit.assert_awaited_once_with({TP0: 8})
        kafka_consumer.seek.assert_not_called()

    async def test_commits_each_partition(self, consumer, kafka_consumer, make_record):
        async def handler(delivery):
            delivery.ack()

        await consumer._process_batch(
            {
                TP0: _batch(make_record, [0, 1]),
                TP1: _batch(make_record, [10], partition=1),
            },
            handler,
        )

        kafka_consumer.commit.assert_awaited_once_with({TP0: 2, TP1: 11})

    async def test_discard_is_committed_without_republish(
        self, consumer, kafka_consumer, producer, make_record
    ):
        async def handler(delivery):
            delivery.nack(requeue=False)

        await consumer._process_batch({TP0: _batch(make_record, [3])}, handler)

        producer.republish.assert_not_awaited()
        kafka_consumer.commit.assert_awaited_once_with({TP0: 4})

    async def test_requeue_republishes_with_incremented_count(
        self, consumer, kafka_consumer, producer, make_record
    ):
        async def handler(delivery):
            delivery.nack(requeue=True)

        records = _batch(make_record, [3], redelivery_count=2)
        await consumer._process_batch({TP0: records}, handler)

        producer.republish.assert_awaited_once_with(records[0], 3)
        kafka_consumer.commit.assert_awaited_once_with({TP0: 4})

    async def test_handler_exception_requeues(
        self, consumer, kafka_consumer, producer, make_record
    ):
        seen = []

        async def handler(delivery):
            seen.append(delivery)
            raise RuntimeError("handler bug")

        await consumer._process_batch({TP0: _batch(make_record, [0])}, handler)

        assert seen[0].outcome is DeliveryOutcome.NACK_REQUEUE
        producer.republish.assert_awaited_once()
        kafka_consumer.commit.assert_awaited_once_with({TP0: 1})

    async def test_unsettled_delivery_requeues(self, consumer, producer, make_record):
        seen = []

        async def handler(delivery):
            seen.append(delivery)

        await consumer._process_batch({TP0: _batch(make_record, [0])}, handler)

        assert seen[0].outcome is DeliveryOutcome.NACK_REQUEUE
        producer.republish.assert_awaited_once()

    async def test_failed_requeue_rewinds_partition(
        self, consumer, kafka_consumer, producer, make_record
    ):
        """Offsets stop at the record whose requeue failed; the rest is refetched."""

        async def handler(delivery):
            if delivery.offset == 1:
                delivery.nack(requeue=True)
            else:
                delivery.ack()

        producer.republish.return_value = False

        rewound = await consumer._process_batch({TP0: _batch(make_record, [0, 1, 2])}, handler)

        assert rewound is True
        kafka_consumer.commit.assert_awaited_once_with({TP0: 1})
        kafka_consumer.seek.assert_called_once_with(TP0, 1)
        assert producer.republish.await_count == 1

    async def test_commit_failure_is_not_raised(self, consumer, kafka_consumer, make_record):
        kafka_consumer.commit.side_effect = RuntimeError("rebalance in progress")

        async def handler(delivery):
            delivery.ack()

        await consumer._process_batch({TP0: _batch(make_record, [0])}, handler)

    async def test_prefetch_bounds_concurrency(self, consumer, make_record):
        active = 0
        peak = 0

        async def handler(delivery):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            delivery.ack()

        await consumer._process_batch({TP0: _batch(make_record, range(10))}, handler)

        assert peak == 4


class TestConsumeLoop:
    """Tests for the consume loop against a patched aiokafka consumer."""

    async def test_consumes_until_stopped(self, broker_config, producer, kafka_consumer, make_record):
        kafka_consumer.assignment.return_value = {TP0}
        batches = [{TP0: _batch(make_record, [0])}]

        async def getmany(**kwargs):
            await asyncio.sleep(0.01)
            return batches.pop() if batches else {}

        kafka_consumer.getmany = getmany
        consumer = ReminderBrokerConsumer(broker_config, producer, poll_timeout_ms=10)
        handled = []

        async def handler(delivery):
            handled.append(delivery)
            delivery.ack()
            await consumer.stop()

        with patch(
            "reminder_pipeline.broker.consumer.AIOKafkaConsumer",
            return_value=kafka_consumer,
        ) as consumer_cls:
            await asyncio.wait_for(consumer.consume(handler), timeout=2)

        assert len(handled) == 1
        assert consumer_cls.call_args.kwargs["enable_auto_commit"] is False
        kafka_consumer.commit.assert_awaited_once_with({TP0: 1})
        kafka_consumer.stop.assert_awaited_once()
        assert not consumer.is_running

    async def test_failed_requeue_backs_off_before_refetch(
        self, broker_config, producer, kafka_consumer, make_record
    ):
        """A record whose requeue keeps failing is not refetched in a tight loop."""
        kafka_consumer.assignment.return_value = {TP0}
        producer.republish.return_value = False
        fetches = []

        async def getmany(**kwargs):
            fetches.append(kwargs)
            return {TP0: _batch(make_record, [7])}

        kafka_consumer.getmany = getmany
        consumer = ReminderBrokerConsumer(broker_config, producer, poll_timeout_ms=10)

        async def handler(delivery):
            delivery.nack(requeue=True)

        with patch(
            "reminder_pipeline.broker.consumer.AIOKafkaConsumer",
            return_value=kafka_consumer,
        ):
            task = asyncio.create_task(consumer.consume(handler))
            await asyncio.sleep(0.3)
            await consumer.stop()
            await asyncio.wait_for(task, timeout=2)

        assert 1 <= len(fetches) < 10
        assert kafka_consumer.seek.call_count == len(fetches)
        kafka_consumer.seek.assert_called_with(TP0, 7)
        kafka_consumer.commit.assert_not_awaited()

    async def test_rewind_backoff_grows_and_resets(self, producer, kafka_consumer, make_record):
        config = BrokerConfig(
            bootstrap_servers="localhost:9092",
            connect_initial_delay_seconds=1.0,
            connect_max_delay_seconds=30.0,
        )
        kafka_consumer.assignment.return_value = {TP0}
        producer.republish.return_value = False
        outcomes = ["requeue", "requeue", "ack", "requeue"]
        offsets = iter(range(100))
        consumer = ReminderBrokerConsumer(config, producer, poll_timeout_ms=10)
        consumer._pause = AsyncMock()

        async def getmany(**kwargs):
            if not outcomes:
                await consumer.stop()
                return {}
            return {TP0: _batch(make_record, [next(offsets)])}

        async def handler(delivery):
            if outcomes.pop(0) == "ack":
                delivery.ack()
            else:
                delivery.nack(requeue=True)

        kafka_consumer.getmany = getmany

        with patch(
            "reminder_pipeline.broker.consumer.AIOKafkaConsumer",
            return_value=kafka_consumer,
        ):
            await asyncio.wait_for(consumer.consume(handler), timeout=2)

        delays = [c.args[0] for c in consumer._pause.await_args_list]
        assert delays == [
            pytest.approx(1.0, rel=0.15),
            pytest.approx(2.0, rel=0.15),
            pytest.approx(1.0, rel=0.15),
        ]

    async def test_disabled_cooldown_raises_after_permanent_failure(
        self, broker_config, producer, kafka_consumer
    ):
        kafka_consumer.start.side_effect = OSError("connection refused")
        connection = ConnectionState(
            "consumer",
            RetryConfig(max_attempts=1, initial_delay_seconds=0, max_delay_seconds=0),
            failure_cooldown_seconds=0,
        )
        consumer = ReminderBrokerConsumer(broker_config, producer, connection=connection)

        with patch(
            "reminder_pipeline.broker.consumer.AIOKafkaConsumer",
            return_value=kafka_consumer,
        ):
            with pytest.raises(BrokerUnavailableError):
                await asyncio.wait_for(consumer.consume(AsyncMock()), timeout=2)

        assert not consumer.is_running

    def test_rejects_zero_prefetch(self, broker_config, producer):
        with pytest.raises(ValueError):
            ReminderBrokerConsumer(broker_config, producer, prefetch_count=0)
