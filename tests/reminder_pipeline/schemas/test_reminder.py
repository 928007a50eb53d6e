"""Tests for the reminder message schema."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from reminder_pipeline.common.exceptions import MalformedMessageError
from reminder_pipeline.schemas.reminder import ReminderMessage, ensure_utc
from reminder_pipeline.store import OverdueTask

PROCESSED_AT = datetime(2024, 3, 1, 17, 5, 0, tzinfo=timezone.utc)


@pytest.fixture
def message():
    """A valid reminder message."""
    return ReminderMessage(
        task_id=42,
        title="File quarterly report",
        due_date=datetime(2024, 3, 1, 17, 0, 0, tzinfo=timezone.utc),
        assignee_name="Sam Lee",
        assignee_email="sam.lee@example.com",
        processed_at=PROCESSED_AT,
    )


class TestEnsureUtc:
    """Tests for ensure_utc."""

    def test_naive_is_assumed_utc(self):
        result = ensure_utc(datetime(2024, 1, 1, 8, 0))
        assert result.tzinfo == timezone.utc
        assert result.hour == 8

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2024, 1, 1, 8, 0, tzinfo=plus_two))
        assert result.hour == 6
        assert result.tzinfo == timezone.utc


class TestReminderMessage:
    """Tests for ReminderMessage."""

    def test_wire_format_fields(self, message):
        payload = json.loads(message.to_bytes())

        assert payload == {
            "task_id": 42,
            "title": "File quarterly report",
            "due_date": "2024-03-01T17:00:00+00:00",
            "assignee_name": "Sam Lee",
            "assignee_email": "sam.lee@example.com",
            "processed_at": "2024-03-01T17:05:00+00:00",
        }

    def test_from_bytes_reads_wire_format(self, message):
        decoded = ReminderMessage.from_bytes(message.to_bytes())
        assert decoded == message

    def test_is_immutable(self, message):
        with pytest.raises(ValidationError):
            message.title = "changed"

    def test_message_id_uses_processed_at_millis(self, message):
        millis = int(PROCESSED_AT.timestamp() * 1000)
        assert message.message_id == f"reminder-42-{millis}"

    def test_naive_timestamps_become_utc(self):
        msg = ReminderMessage(
            task_id=1,
            title="t",
            due_date=datetime(2024, 1, 1, 9, 0),
            assignee_name="A",
            assignee_email="a@b.c",
            processed_at=datetime(2024, 1, 2, 9, 0),
        )
        assert msg.due_date.tzinfo == timezone.utc
        assert msg.processed_at.tzinfo == timezone.utc

    def test_strings_are_stripped(self):
        msg = ReminderMessage(
            task_id=1,
            title="  Pay invoice  ",
            due_date=PROCESSED_AT,
            assignee_name=" Ana ",
            assignee_email=" ana@example.com ",
            processed_at=PROCESSED_AT,
        )
        assert msg.title == "Pay invoice"
        assert msg.assignee_name == "Ana"
        assert msg.assignee_email == "ana@example.com"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"task_id": 0},
            {"title": ""},
            {"title": "   "},
            {"title": "x" * 201},
            {"assignee_name": ""},
        ],
    )
    def test_invalid_fields_rejected(self, overrides):
        data = {
            "task_id": 1,
            "title": "Valid",
            "due_date": PROCESSED_AT,
            "assignee_name": "Ana",
            "assignee_email": "ana@example.com",
            "processed_at": PROCESSED_AT,
            **overrides,
        }
        with pytest.raises(ValidationError):
            ReminderMessage(**data)

    def test_for_task_snapshots_task(self):
        task = OverdueTask(
            task_id=9,
            title="Renew license",
            due_date=datetime(2024, 2, 28, 9, 0, tzinfo=timezone.utc),
            assignee_name="Kim",
            assignee_email="kim@example.com",
        )

        msg = ReminderMessage.for_task(task, processed_at=PROCESSED_AT)

        assert msg.task_id == 9
        assert msg.title == "Renew license"
        assert msg.due_date == task.due_date
        assert msg.assignee_email == "kim@example.com"
        assert msg.processed_at == PROCESSED_AT


class TestFromBytes:
    """Tests for decoding delivered payloads."""

    def test_empty_payload_is_malformed(self):
        with pytest.raises(MalformedMessageError):
            ReminderMessage.from_bytes(b"")

    def test_invalid_json_is_malformed(self):
        with pytest.raises(MalformedMessageError):
            ReminderMessage.from_bytes(b"{not json")

    def test_json_null_is_malformed(self):
        with pytest.raises(MalformedMessageError):
            ReminderMessage.from_bytes(b"null")

    def test_missing_fields_are_malformed(self):
        with pytest.raises(MalformedMessageError) as exc_info:
            ReminderMessage.from_bytes(b'{"task_id": 1}')

        assert isinstance(exc_info.value.cause, ValidationError)
        assert not exc_info.value.is_retryable
