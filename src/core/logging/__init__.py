"""
Structured logging module.

Provides JSON and console formatting, context propagation across asyncio
tasks, and rotating per-stage log files.
"""

from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.filters import StageContextFilter
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import (
    generate_cycle_id,
    get_logger,
    setup_logging,
    setup_multi_worker_logging,
)

__all__ = [
    "clear_log_context",
    "get_log_context",
    "set_log_context",
    "StageContextFilter",
    "ConsoleFormatter",
    "JSONFormatter",
    "generate_cycle_id",
    "get_logger",
    "setup_logging",
    "setup_multi_worker_logging",
]
