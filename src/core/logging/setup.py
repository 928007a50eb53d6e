"""Logging setup and configuration."""

import io
import logging
import os
import secrets
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from core.logging.context import set_log_context
from core.logging.filters import StageContextFilter
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_DOMAIN = "reminders"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
    "sqlalchemy.engine",
    "urllib3",
]

_PLAIN_FILE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)


def get_log_file_path(
    log_dir: Path,
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> Path:
    """
    Build log file path with domain/date subfolder structure.

    Structure: {log_dir}/{domain}/{YYYY-MM-DD}/{domain}_{stage}_{YYYYMMDD}[_instance].log

    Args:
        log_dir: Base log directory
        domain: Pipeline domain
        stage: Stage name (scanner, consumer, ...)
        instance_id: Unique instance identifier (e.g., process ID)

    Returns:
        Full path to log file
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    date_str = now.strftime("%Y%m%d")

    name_parts = [p for p in (domain, stage) if p] or ["pipeline"]
    name_parts.append(date_str)
    if instance_id:
        name_parts.append(instance_id)
    filename = "_".join(name_parts) + ".log"

    if domain:
        return log_dir / domain / date_folder / filename
    return log_dir / date_folder / filename


def _file_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(_PLAIN_FILE_FORMAT)


def _rotating_handler(
    log_file: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _console_handler(level: int) -> logging.StreamHandler:
    if sys.platform == "win32":
        stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    else:
        stream = sys.stdout
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter())
    return handler


def _reset_root_logger() -> logging.Logger:
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()
    return root_logger


def _quiet_noisy_loggers() -> None:
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def setup_logging(
    name: str = "reminder_pipeline",
    stage: Optional[str] = None,
    domain: Optional[str] = DEFAULT_DOMAIN,
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: Optional[str] = None,
    use_instance_id: bool = True,
) -> logging.Logger:
    """
    Configure logging with console and rotating file handlers.

    Log files are organized by domain and date:
        logs/reminders/2025-01-15/reminders_scanner_20250115_p12345.log

    Args:
        name: Logger name returned to the caller
        stage: Stage name for per-stage log files
        domain: Pipeline domain (default: reminders)
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
        suppress_noisy: Quiet down Kafka and SQL client loggers
        worker_id: Worker identifier for context
        use_instance_id: Append process ID to log filename (default: True)

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    set_log_context(worker_id=worker_id, stage=stage, domain=domain)

    instance_id = f"p{os.getpid()}" if use_instance_id else None
    log_file = get_log_file_path(
        log_dir, domain=domain, stage=stage, instance_id=instance_id
    )

    root_logger = _reset_root_logger()
    root_logger.addHandler(
        _rotating_handler(
            log_file, file_level, _file_formatter(json_format), max_bytes, backup_count
        )
    )
    root_logger.addHandler(_console_handler(console_level))

    if suppress_noisy:
        _quiet_noisy_loggers()

    logger = logging.getLogger(name)
    logger.debug(
        f"Logging initialized: file={log_file}, json={json_format}",
        extra={"stage": stage or "pipeline", "domain": domain or "unknown"},
    )
    return logger


def setup_multi_worker_logging(
    workers: List[str],
    domain: str = DEFAULT_DOMAIN,
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    use_instance_id: bool = True,
) -> logging.Logger:
    """
    Configure logging with per-worker file handlers.

    Creates one RotatingFileHandler per worker stage, each filtered to
    records logged under that stage's context, plus a combined file that
    receives everything.

    Args:
        workers: Worker stage names (e.g., ["scanner", "consumer"])
        domain: Pipeline domain (default: reminders)
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
        suppress_noisy: Quiet down Kafka and SQL client loggers
        use_instance_id: Append process ID to log filenames (default: True)

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    instance_id = f"p{os.getpid()}" if use_instance_id else None
    file_formatter = _file_formatter(json_format)

    root_logger = _reset_root_logger()
    root_logger.addHandler(_console_handler(console_level))

    for worker in workers:
        log_file = get_log_file_path(
            log_dir, domain=domain, stage=worker, instance_id=instance_id
        )
        handler = _rotating_handler(
            log_file, file_level, file_formatter, max_bytes, backup_count
        )
        handler.addFilter(StageContextFilter(worker))
        root_logger.addHandler(handler)

    combined_file = get_log_file_path(
        log_dir, domain=domain, stage="pipeline", instance_id=instance_id
    )
    root_logger.addHandler(
        _rotating_handler(
            combined_file, file_level, file_formatter, max_bytes, backup_count
        )
    )

    if suppress_noisy:
        _quiet_noisy_loggers()

    logger = logging.getLogger("reminder_pipeline")
    logger.debug(
        f"Multi-worker logging initialized: workers={workers}, domain={domain}",
        extra={"stage": "pipeline", "domain": domain},
    )
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Use this instead of logging.getLogger() to ensure consistent naming.
    """
    return logging.getLogger(name)


def generate_cycle_id() -> str:
    """
    Generate unique cycle identifier.

    Format: c-YYYYMMDD-HHMMSS-XXXX where XXXX is random hex.
    """
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = secrets.token_hex(2)
    return f"c-{ts}-{suffix}"
