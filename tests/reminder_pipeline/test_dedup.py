"""Tests for the reminder dedup cache."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from reminder_pipeline.dedup import DedupCache, run_sweeper

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=60)
SWEEP_INTERVAL = timedelta(minutes=10)


class TestDedupCache:
    """Tests for DedupCache."""

    @pytest.fixture
    def cache(self):
        """Cache with the default one-hour window."""
        return DedupCache(window=WINDOW)

    def test_unknown_task_should_be_processed(self, cache):
        assert cache.should_process(1, T0) is True

    def test_second_check_within_window_is_suppressed(self, cache):
        """Processed once, then suppressed for the rest of the window."""
        assert cache.should_process(7, T0)
        cache.mark_processed(7, T0)

        assert cache.should_process(7, T0 + timedelta(minutes=1)) is False
        assert cache.should_process(7, T0 + timedelta(minutes=59)) is False

    def test_processable_again_after_window(self, cache):
        cache.mark_processed(7, T0)

        assert cache.should_process(7, T0 + WINDOW) is True
        assert cache.should_process(7, T0 + WINDOW + timedelta(seconds=1)) is True

    def test_mark_overwrites_previous_timestamp(self, cache):
        cache.mark_processed(3, T0)
        cache.mark_processed(3, T0 + timedelta(minutes=50))

        # Window now runs from the later mark
        assert cache.should_process(3, T0 + timedelta(minutes=70)) is False
        assert cache.should_process(3, T0 + timedelta(minutes=111)) is True

    def test_entries_are_per_task(self, cache):
        cache.mark_processed(1, T0)

        assert cache.should_process(1, T0) is False
        assert cache.should_process(2, T0) is True

    def test_naive_timestamps_are_treated_as_utc(self, cache):
        cache.mark_processed(5, T0.replace(tzinfo=None))

        assert cache.should_process(5, T0 + timedelta(minutes=5)) is False

    def test_sweep_removes_only_expired_entries(self, cache):
        cache.mark_processed(1, T0)
        cache.mark_processed(2, T0 + timedelta(minutes=30))

        evicted = cache.sweep(T0 + WINDOW + timedelta(minutes=1))

        assert evicted == 1
        assert 1 not in cache
        assert 2 in cache
        assert len(cache) == 1

    def test_entry_absent_after_window_plus_sweep_interval(self, cache):
        """An entry marked at T is gone once a sweep runs by T + window + interval."""
        cache.mark_processed(42, T0)

        # Worst case: the last sweep before expiry ran just before T + window
        cache.sweep(T0 + WINDOW - timedelta(seconds=1))
        assert 42 in cache

        cache.sweep(T0 + WINDOW + SWEEP_INTERVAL)
        assert 42 not in cache

    def test_clear(self, cache):
        cache.mark_processed(1, T0)
        cache.mark_processed(2, T0)

        cache.clear()

        assert len(cache) == 0

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            DedupCache(window=timedelta(0))

    def test_diagnostics(self, cache):
        cache.mark_processed(1, T0)
        cache.sweep(T0 + 2 * WINDOW)

        diagnostics = cache.get_diagnostics()

        assert diagnostics["cache_size"] == 0
        assert diagnostics["window_seconds"] == 3600
        assert diagnostics["evicted_total"] == 1

    def test_concurrent_marks_from_threads(self, cache):
        """Marks for different ids from many threads are all kept."""

        def mark_range(start):
            for task_id in range(start, start + 200):
                cache.mark_processed(task_id, T0)

        threads = [threading.Thread(target=mark_range, args=(i * 200,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 1600
        assert not cache.should_process(1599, T0)


class TestRunSweeper:
    """Tests for the background sweep loop."""

    @pytest.mark.asyncio
    async def test_sweeps_on_interval_until_shutdown(self):
        cache = DedupCache(window=WINDOW)
        cache.mark_processed(1, T0)
        shutdown = asyncio.Event()

        sweeper = asyncio.create_task(
            run_sweeper(
                cache,
                shutdown,
                interval=timedelta(milliseconds=10),
                clock=lambda: T0 + 2 * WINDOW,
            )
        )
        for _ in range(100):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)

        assert len(cache) == 0

        shutdown.set()
        await asyncio.wait_for(sweeper, timeout=1)
        assert sweeper.done()

    @pytest.mark.asyncio
    async def test_stops_promptly_when_shutdown_set(self):
        cache = DedupCache(window=WINDOW)
        shutdown = asyncio.Event()

        sweeper = asyncio.create_task(
            cache.run_sweeper(shutdown, interval=timedelta(minutes=10))
        )
        await asyncio.sleep(0)
        shutdown.set()

        await asyncio.wait_for(sweeper, timeout=1)

    @pytest.mark.asyncio
    async def test_failed_sweep_does_not_stop_loop(self):
        cache = DedupCache(window=WINDOW)
        shutdown = asyncio.Event()
        calls = []

        def flaky_clock():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("clock unavailable")
            return T0

        sweeper = asyncio.create_task(
            run_sweeper(cache, shutdown, interval=timedelta(milliseconds=5), clock=flaky_clock)
        )
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)

        shutdown.set()
        await asyncio.wait_for(sweeper, timeout=1)
        assert len(calls) >= 3
