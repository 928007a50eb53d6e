"""Reminder side effect: a WARNING log record addressed to the assignee."""

import logging
from typing import Optional

from reminder_pipeline.common.exceptions import NotificationError
from reminder_pipeline.schemas.reminder import ReminderMessage

logger = logging.getLogger(__name__)

DUE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_reminder(message: ReminderMessage) -> str:
    return (
        f"Hi your Task is due {{Task {message.task_id} - {message.title}}} - "
        f"Due Date: {message.due_date.strftime(DUE_DATE_FORMAT)}, "
        f"Assigned to: {message.assignee_name} ({message.assignee_email})"
    )


class ReminderNotifier:
    """Emits the reminder for one task.

    Email and SMS delivery are out of scope; the log record is the
    notification.
    """

    def __init__(self, target: Optional[logging.Logger] = None):
        self._logger = target or logger

    def notify(self, message: ReminderMessage) -> None:
        """
        Raises:
            NotificationError: If the reminder could not be emitted
        """
        try:
            text = format_reminder(message)
        except (AttributeError, ValueError) as e:
            raise NotificationError(
                f"Could not format reminder for task {message.task_id}",
                cause=e,
                context={"task_id": message.task_id},
            ) from e

        self._logger.warning(
            text,
            extra={
                "task_id": message.task_id,
                "title": message.title,
                "due_date": message.due_date.isoformat(),
                "assignee_email": message.assignee_email,
            },
        )
