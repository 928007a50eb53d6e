"""
Time-windowed duplicate suppression for reminder deliveries.

Keeps ``task_id -> last_processed_at`` in memory. A process restart clears
it; durable suppression is the job of the optional reminder log.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.metrics import update_dedup_cache
from reminder_pipeline.schemas.reminder import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class DedupCache:
    """
    In-memory map of recently processed task ids.

    All operations take an internal lock, so the cache can be shared by the
    delivery handlers and the sweeper without extra locking by callers.
    Concurrent marks for the same id are last-write-wins.

    Example:
        >>> cache = DedupCache(window=timedelta(minutes=60))
        >>> if cache.should_process(42, now):
        ...     notify(...)
        ...     cache.mark_processed(42, now)
    """

    def __init__(self, window: timedelta = timedelta(minutes=60)):
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.window = window
        self._entries: Dict[int, datetime] = {}
        self._lock = threading.Lock()
        self._evicted_total = 0

    def should_process(self, task_id: int, now: Optional[datetime] = None) -> bool:
        """False if the task was processed less than one window before ``now``."""
        now = ensure_utc(now) if now is not None else utc_now()
        with self._lock:
            last = self._entries.get(task_id)
        if last is None:
            return True
        return now - last >= self.window

    def mark_processed(self, task_id: int, now: Optional[datetime] = None) -> None:
        now = ensure_utc(now) if now is not None else utc_now()
        with self._lock:
            self._entries[task_id] = now
            size = len(self._entries)
        update_dedup_cache(size)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Evict entries that have aged out of the window.

        Returns:
            Number of entries removed
        """
        now = ensure_utc(now) if now is not None else utc_now()
        cutoff = now - self.window
        with self._lock:
            expired = [k for k, ts in self._entries.items() if ts <= cutoff]
            for task_id in expired:
                del self._entries[task_id]
            size = len(self._entries)
            self._evicted_total += len(expired)

        update_dedup_cache(size, evicted=len(expired))
        log_with_context(
            logger,
            logging.DEBUG,
            "Dedup cache swept",
            evicted_count=len(expired),
            cache_size=size,
        )
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        update_dedup_cache(0)

    def get_diagnostics(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        return {
            "cache_size": size,
            "window_seconds": self.window.total_seconds(),
            "evicted_total": self._evicted_total,
        }

    async def run_sweeper(
        self,
        shutdown_event: asyncio.Event,
        interval: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Sweep every ``interval`` until ``shutdown_event`` is set."""
        await run_sweeper(self, shutdown_event, interval, clock)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._entries


async def run_sweeper(
    cache: DedupCache,
    shutdown_event: asyncio.Event,
    interval: timedelta = timedelta(minutes=10),
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """
    Sweep ``cache`` every ``interval`` until ``shutdown_event`` is set.

    A failed sweep is logged; the next one runs on schedule.
    """
    seconds = interval.total_seconds()
    log_with_context(
        logger,
        logging.INFO,
        "Dedup sweeper started",
        delay_seconds=seconds,
    )
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
            break
        except asyncio.TimeoutError:
            pass

        try:
            evicted = cache.sweep(clock())
        except Exception as e:
            log_exception(logger, e, "Dedup sweep failed")
            continue
        if evicted:
            log_with_context(
                logger,
                logging.INFO,
                f"Evicted {evicted} expired dedup entr{'y' if evicted == 1 else 'ies'}",
                evicted_count=evicted,
                cache_size=len(cache),
            )
    logger.info("Dedup sweeper stopped")


__all__ = [
    "DedupCache",
    "run_sweeper",
]
