"""
Shared fixtures for reminder pipeline tests.

Provides:
- Broker and reminder configuration with fast timings
- In-memory SQLite task store seeded through SQLAlchemy Core
- Fake ConsumerRecords and delivered reminder payloads
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from aiokafka.structs import ConsumerRecord
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from reminder_pipeline.broker.delivery import MESSAGE_ID_HEADER, REDELIVERY_HEADER
from reminder_pipeline.config import BrokerConfig, ReminderConfig
from reminder_pipeline.schemas.reminder import ReminderMessage
from reminder_pipeline.store import SqlTaskStore, metadata, tasks_table

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def broker_config() -> BrokerConfig:
    """Broker configuration with a short retry policy."""
    return BrokerConfig(
        bootstrap_servers="localhost:9092",
        connect_max_attempts=2,
        connect_initial_delay_seconds=0.0,
        connect_max_delay_seconds=0.0,
        failure_cooldown_seconds=300.0,
    )


@pytest.fixture
def reminder_config() -> ReminderConfig:
    """Reminder configuration with no start-up delay."""
    return ReminderConfig(
        scan_interval_minutes=5,
        initial_delay_seconds=0,
        store_timeout_seconds=5,
    )


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seeded_store(engine) -> SqlTaskStore:
    """
    Store with three tasks:
    A (id 1): due yesterday, incomplete
    B (id 2): due yesterday, completed
    C (id 3): due tomorrow, incomplete
    """
    yesterday = (NOW - timedelta(days=1)).replace(tzinfo=None)
    tomorrow = (NOW + timedelta(days=1)).replace(tzinfo=None)
    with engine.begin() as conn:
        conn.execute(
            insert(tasks_table),
            [
                {"id": 1, "title": "Task A", "due_date": yesterday,
                 "full_name": "Ana", "email": "ana@example.com", "is_completed": False},
                {"id": 2, "title": "Task B", "due_date": yesterday,
                 "full_name": "Ben", "email": "ben@example.com", "is_completed": True},
                {"id": 3, "title": "Task C", "due_date": tomorrow,
                 "full_name": "Cy", "email": "cy@example.com", "is_completed": False},
            ],
        )
    return SqlTaskStore(engine)


def _make_message(task_id: int = 42, processed_at: datetime = NOW) -> ReminderMessage:
    return ReminderMessage(
        task_id=task_id,
        title=f"Task {task_id}",
        due_date=processed_at - timedelta(hours=1),
        assignee_name="Sam Lee",
        assignee_email="sam.lee@example.com",
        processed_at=processed_at,
    )


def _make_record(
    value: Optional[bytes],
    offset: int = 0,
    partition: int = 0,
    topic: str = "task.reminders",
    redelivery_count: Optional[int] = None,
    message_id: Optional[str] = "reminder-42-1",
) -> ConsumerRecord:
    headers = []
    if message_id is not None:
        headers.append((MESSAGE_ID_HEADER, message_id.encode()))
    if redelivery_count is not None:
        headers.append((REDELIVERY_HEADER, str(redelivery_count).encode()))
    return ConsumerRecord(
        topic=topic,
        partition=partition,
        offset=offset,
        timestamp=0,
        timestamp_type=0,
        key=b"42",
        value=value,
        checksum=None,
        serialized_key_size=2,
        serialized_value_size=len(value) if value else 0,
        headers=headers,
    )


@pytest.fixture
def make_message():
    """Factory for valid reminder messages."""
    return _make_message


@pytest.fixture
def make_record():
    """Factory for delivered ConsumerRecords."""
    return _make_record
