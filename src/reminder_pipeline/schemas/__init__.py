"""Message schemas for the reminder pipeline."""

from reminder_pipeline.schemas.reminder import ReminderMessage, ensure_utc, utc_now

__all__ = [
    "ReminderMessage",
    "ensure_utc",
    "utc_now",
]
