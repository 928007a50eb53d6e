"""
Entry point for running the reminder pipeline workers.

Usage:
    # Run scanner and consumer together
    python -m reminder_pipeline

    # Run one worker
    python -m reminder_pipeline --worker scanner
    python -m reminder_pipeline --worker consumer

    # Run with metrics server on a custom port
    python -m reminder_pipeline --metrics-port 9090

Architecture:
    Scanner:  task store -> overdue tasks -> task.reminders
    Consumer: task.reminders -> dedup cache -> reminder log record -> ack
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from prometheus_client import start_http_server

from core.logging.context import set_log_context
from core.logging.setup import get_logger, setup_logging, setup_multi_worker_logging
from reminder_pipeline.common.exceptions import ConfigurationError

# Worker stages for multi-worker logging
WORKER_STAGES = ["scanner", "consumer"]

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers; each worker's watcher stops it gracefully
_shutdown_event: Optional[asyncio.Event] = None


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run overdue task reminder workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run scanner and consumer
    python -m reminder_pipeline

    # Run only the consumer
    python -m reminder_pipeline --worker consumer

    # Use a specific config file
    python -m reminder_pipeline --config /etc/reminders/config.yaml
        """,
    )

    parser.add_argument(
        "--worker",
        choices=["scanner", "consumer", "all"],
        default="all",
        help="Which worker(s) to run (default: all)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: REMINDER_CONFIG_PATH or src/config.yaml)",
    )

    return parser.parse_args(argv)


async def _watch_for_shutdown(worker, name: str) -> None:
    await get_shutdown_event().wait()
    logger.info(f"Shutdown signal received, stopping {name}...")
    await worker.stop()


async def _cancel_watcher(watcher_task: asyncio.Task) -> None:
    watcher_task.cancel()
    try:
        await watcher_task
    except asyncio.CancelledError:
        pass


async def run_scanner(pipeline_config):
    """Run the Overdue Scanner.

    Supports graceful shutdown: when the shutdown event is set, the scanner
    finishes its current cycle before exiting.
    """
    from reminder_pipeline.broker.producer import ReminderProducer
    from reminder_pipeline.broker.publish_pool import PublishPool
    from reminder_pipeline.scanner import OverdueScanner
    from reminder_pipeline.store import SqlTaskStore

    set_log_context(stage="scanner")
    logger.info("Starting Overdue Scanner...")

    reminders = pipeline_config.reminders
    if not reminders.store_url:
        raise ConfigurationError("TASK_STORE_URL is required to run the scanner")

    store = SqlTaskStore.from_url(reminders.store_url)
    producer = ReminderProducer(pipeline_config.broker)
    publish_pool = None
    if reminders.fire_and_forget:
        publish_pool = PublishPool(
            producer,
            workers=reminders.publish_pool_workers,
            queue_size=reminders.publish_pool_queue_size,
        )

    scanner = OverdueScanner(reminders, store, producer, publish_pool=publish_pool)
    watcher_task = asyncio.create_task(_watch_for_shutdown(scanner, "scanner"))

    try:
        async with scanner:
            await scanner.run()
    finally:
        await _cancel_watcher(watcher_task)
        store.dispose()


async def run_consumer(pipeline_config):
    """Run the Reminder Consumer and its dedup sweeper.

    Supports graceful shutdown: when the shutdown event is set, the consumer
    settles the batch in hand, commits and closes its connection.
    """
    from reminder_pipeline.broker.consumer import ReminderBrokerConsumer
    from reminder_pipeline.broker.producer import ReminderProducer
    from reminder_pipeline.consumer import ReminderConsumer
    from reminder_pipeline.store import SqlReminderLog, SqlTaskStore

    set_log_context(stage="consumer")
    logger.info("Starting Reminder Consumer...")

    reminders = pipeline_config.reminders
    reminder_log = None
    store = None
    if reminders.reminder_log_enabled:
        if not reminders.store_url:
            raise ConfigurationError("TASK_STORE_URL is required when REMINDER_LOG_ENABLED is set")
        store = SqlTaskStore.from_url(reminders.store_url)
        reminder_log = SqlReminderLog(store.engine)

    # Requeued deliveries are written back through a producer
    producer = ReminderProducer(pipeline_config.broker)
    broker_consumer = ReminderBrokerConsumer(
        pipeline_config.broker,
        producer,
        prefetch_count=reminders.prefetch_count,
    )
    consumer = ReminderConsumer(reminders, broker_consumer, reminder_log=reminder_log)
    watcher_task = asyncio.create_task(_watch_for_shutdown(consumer, "consumer"))

    try:
        await consumer.run()
    finally:
        await _cancel_watcher(watcher_task)
        await producer.stop()
        if store is not None:
            store.dispose()


async def run_all_workers(pipeline_config):
    """Run scanner and consumer concurrently."""
    logger.info("Starting all reminder workers...")

    tasks = [
        asyncio.create_task(run_scanner(pipeline_config), name="scanner"),
        asyncio.create_task(run_consumer(pipeline_config), name="consumer"),
    ]

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Workers cancelled, shutting down...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    - First SIGINT/SIGTERM: sets the global shutdown event. The scanner
      finishes its cycle, the consumer settles and commits its batch, and
      broker connections are closed.
    - Second signal: cancels all tasks immediately.

    Signal handlers are not supported on Windows; KeyboardInterrupt is used
    there instead.
    """

    def handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def main(argv=None):
    """Main entry point."""
    global logger
    args = parse_args(argv)

    load_dotenv()

    log_level = getattr(logging, args.log_level)

    # JSON_LOGS=false gives human-readable file logs for local development
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")

    # Log directory: CLI arg > env var > default ./logs
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))

    worker_id = os.getenv("WORKER_ID", f"reminders-{args.worker}")

    if args.worker == "all":
        setup_multi_worker_logging(
            workers=WORKER_STAGES,
            log_dir=log_dir,
            json_format=json_logs,
            console_level=log_level,
        )
    else:
        setup_logging(
            name="reminder_pipeline",
            stage=args.worker,
            log_dir=log_dir,
            json_format=json_logs,
            console_level=log_level,
            worker_id=worker_id,
        )

    # Re-get logger after setup to use new handlers
    logger = get_logger(__name__)

    from reminder_pipeline.config import get_pipeline_config

    try:
        pipeline_config = get_pipeline_config(
            Path(args.config) if args.config else None
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info(f"Starting metrics server on port {args.metrics_port}")
    start_http_server(args.metrics_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    try:
        if args.worker == "scanner":
            loop.run_until_complete(run_scanner(pipeline_config))
        elif args.worker == "consumer":
            loop.run_until_complete(run_consumer(pipeline_config))
        else:  # all
            loop.run_until_complete(run_all_workers(pipeline_config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Reminder pipeline shutdown complete")


if __name__ == "__main__":
    main()
