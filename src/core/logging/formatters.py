"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Timing and errors
        "duration_ms",
        "error_category",
        "error_message",
        "error_type",
        "circuit_name",
        "circuit_state",
        "retry_after",
        # Reminder identifiers
        "task_id",
        "title",
        "due_date",
        "assignee_email",
        "message_id",
        "outcome",
        "redelivery_count",
        "rewind_streak",
        # Kafka context
        "topic",
        "partition",
        "offset",
        "consumer_group",
        "bootstrap_servers",
        "partition_count",
        # Scan and cache tracking
        "overdue_count",
        "published_count",
        "failed_count",
        "evicted_count",
        "cache_size",
        "scan_duration_ms",
        "query_duration_ms",
        # Connection tracking
        "connection_status",
        "previous_status",
        "attempt",
        "max_attempts",
        "delay_seconds",
        # Pool tracking
        "queue_size",
        "workers",
        "dropped_count",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables
        ctx = get_log_context()
        for key in ("domain", "stage", "cycle_id", "worker_id"):
            if ctx[key]:
                log_entry[key] = ctx[key]

        # Source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        if ctx["domain"]:
            parts.append(f"[{ctx['domain']}]")
        if ctx["stage"]:
            parts.append(f"[{ctx['stage']}]")

        prefix = " - ".join(parts)

        task_id = getattr(record, "task_id", None)
        if task_id is not None:
            message = f"{prefix} - [task {task_id}] {record.getMessage()}"
        else:
            message = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
