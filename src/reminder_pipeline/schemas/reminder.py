"""
Reminder message schema.

The wire contract between the overdue scanner and the reminder consumer.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from reminder_pipeline.common.exceptions import MalformedMessageError

if TYPE_CHECKING:
    from reminder_pipeline.store import OverdueTask


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReminderMessage(BaseModel):
    """Snapshot of one overdue task, published for asynchronous processing.

    Built only for tasks whose due date was strictly before the scan time
    and which were not completed at scan time. Instances are frozen and carry
    everything the consumer needs; the consumer never goes back to the store.

    Attributes:
        task_id: Identifier of the source task
        title: Task title (at most 200 characters)
        due_date: Original deadline (UTC)
        assignee_name: Who should be reminded
        assignee_email: Where the assignee can be reached
        processed_at: When the scanner built this message (UTC)

    Example:
        >>> from datetime import datetime, timezone
        >>> msg = ReminderMessage(
        ...     task_id=42,
        ...     title="File quarterly report",
        ...     due_date=datetime(2024, 3, 1, 17, 0, tzinfo=timezone.utc),
        ...     assignee_name="Sam Lee",
        ...     assignee_email="sam.lee@example.com",
        ...     processed_at=datetime.now(timezone.utc),
        ... )
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "task_id": 42,
                    "title": "File quarterly report",
                    "due_date": "2024-03-01T17:00:00+00:00",
                    "assignee_name": "Sam Lee",
                    "assignee_email": "sam.lee@example.com",
                    "processed_at": "2024-03-01T17:05:00+00:00",
                }
            ]
        },
    )

    task_id: int = Field(
        ...,
        description="Identifier of the source task",
        gt=0,
    )
    title: str = Field(
        ...,
        description="Task title",
        min_length=1,
        max_length=200,
    )
    due_date: datetime = Field(
        ...,
        description="Original task deadline (UTC)",
    )
    assignee_name: str = Field(
        ...,
        description="Name of the person the task is assigned to",
        min_length=1,
    )
    assignee_email: str = Field(
        ...,
        description="Email of the person the task is assigned to",
        min_length=3,
    )
    processed_at: datetime = Field(
        ...,
        description="When the reminder was built by the scanner (UTC)",
    )

    @field_validator("title", "assignee_name", "assignee_email")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure string fields are not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()

    @field_validator("due_date", "processed_at")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_serializer("due_date", "processed_at")
    def serialize_timestamp(self, ts: datetime) -> str:
        """Serialize timestamps to ISO-8601 format."""
        return ts.isoformat()

    @property
    def message_id(self) -> str:
        """Stable id for this publication, sent as a record header."""
        millis = int(self.processed_at.timestamp() * 1000)
        return f"reminder-{self.task_id}-{millis}"

    @classmethod
    def for_task(cls, task: "OverdueTask", processed_at: datetime) -> "ReminderMessage":
        """Build the reminder for an overdue task found at ``processed_at``."""
        return cls(
            task_id=task.task_id,
            title=task.title,
            due_date=task.due_date,
            assignee_name=task.assignee_name,
            assignee_email=task.assignee_email,
            processed_at=processed_at,
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ReminderMessage":
        """
        Decode a delivered payload.

        Raises:
            MalformedMessageError: If the payload is empty, not JSON, or
                does not satisfy the schema
        """
        if not raw:
            raise MalformedMessageError("Empty reminder payload")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedMessageError(
                f"Invalid reminder payload: {e.error_count()} error(s)",
                cause=e,
            ) from e
