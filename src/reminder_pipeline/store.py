"""
Task store access for the reminder pipeline.

The pipeline only reads one thing from the task store: the overdue,
incomplete tasks. ``OverdueTaskStore`` is that contract; ``SqlTaskStore``
implements it with SQLAlchemy Core against the ``tasks`` table owned by the
task application.

``ReminderLog`` is the optional durable record of processed reminders. It is
off by default; the in-memory dedup cache alone decides whether a reminder
fires.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    false,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from reminder_pipeline.common.exceptions import StoreQueryError
from reminder_pipeline.common.logging import log_with_context
from reminder_pipeline.schemas.reminder import ensure_utc

logger = logging.getLogger(__name__)

metadata = MetaData()

# Owned by the task application; declared here only for querying.
# Timestamps are stored as naive UTC.
tasks_table = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(200), nullable=False),
    Column("due_date", DateTime, nullable=False),
    Column("full_name", String(100), nullable=False),
    Column("email", String(255), nullable=False),
    Column("is_completed", Boolean, nullable=False, default=False),
)

task_reminders_table = Table(
    "task_reminders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("task_id", Integer, nullable=False, index=True),
    Column("sent_at", DateTime, nullable=False, index=True),
    Column("status", String(50), nullable=False),
    Column("notes", String(500), nullable=True),
)


@dataclass(frozen=True)
class OverdueTask:
    """One row of the overdue task query."""

    task_id: int
    title: str
    due_date: datetime
    assignee_name: str
    assignee_email: str
    is_completed: bool = False

    def is_overdue(self, now: datetime) -> bool:
        """Due strictly before ``now`` and not completed."""
        return not self.is_completed and ensure_utc(self.due_date) < ensure_utc(now)


class OverdueTaskStore(Protocol):
    """Read-only query the scanner needs from the task store."""

    def list_overdue_incomplete(self, now: datetime) -> Sequence[OverdueTask]:
        ...


class ReminderLog(Protocol):
    """Durable record of processed reminders."""

    def record_reminder(
        self,
        task_id: int,
        sent_at: datetime,
        status: str,
        notes: Optional[str] = None,
    ) -> None:
        ...


def _naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


class SqlTaskStore:
    """
    SQLAlchemy-backed task store.

    All methods are synchronous; async callers run them in a worker thread.

    Example:
        >>> store = SqlTaskStore.from_url("postgresql+psycopg://app@db/tasks")
        >>> store.list_overdue_incomplete(datetime.now(timezone.utc))
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "SqlTaskStore":
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_engine(url, **engine_kwargs))

    def list_overdue_incomplete(self, now: datetime) -> List[OverdueTask]:
        """
        Return tasks with ``due_date < now`` that are not completed.

        Raises:
            StoreQueryError: If the query fails
        """
        stmt = (
            select(
                tasks_table.c.id,
                tasks_table.c.title,
                tasks_table.c.due_date,
                tasks_table.c.full_name,
                tasks_table.c.email,
                tasks_table.c.is_completed,
            )
            .where(tasks_table.c.due_date < _naive_utc(now))
            .where(tasks_table.c.is_completed == false())
            .order_by(tasks_table.c.due_date)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StoreQueryError("Overdue task query failed", cause=e) from e

        return [
            OverdueTask(
                task_id=row.id,
                title=row.title,
                due_date=ensure_utc(row.due_date),
                assignee_name=row.full_name,
                assignee_email=row.email,
                is_completed=bool(row.is_completed),
            )
            for row in rows
        ]

    def dispose(self) -> None:
        self.engine.dispose()


class SqlReminderLog:
    """Appends processed reminders to the ``task_reminders`` table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def record_reminder(
        self,
        task_id: int,
        sent_at: datetime,
        status: str,
        notes: Optional[str] = None,
    ) -> None:
        """
        Insert one reminder log row.

        Raises:
            StoreQueryError: If the insert fails
        """
        stmt = insert(task_reminders_table).values(
            task_id=task_id,
            sent_at=_naive_utc(sent_at),
            status=status,
            notes=notes[:500] if notes else None,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreQueryError("Reminder log insert failed", cause=e) from e

        log_with_context(
            logger,
            logging.DEBUG,
            "Reminder logged",
            task_id=task_id,
            outcome=status,
        )
