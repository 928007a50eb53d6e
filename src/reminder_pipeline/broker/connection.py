"""
Broker connection status shared by the producer and consumer.

A connection is in one of three states:

- UNCONNECTED: no client yet, or the last one was closed
- CONNECTED: client started and usable
- PERMANENTLY_FAILED: every connection attempt failed; callers fail soft
  without touching the network until the cooldown elapses

All transitions go through ``ConnectionState.ensure_connected`` under one
``asyncio.Lock``, with a single ``RetryConfig`` deciding how many attempts
are made and how long to back off between them.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from reminder_pipeline.common.logging import log_exception, log_with_context
from reminder_pipeline.common.resilience.retry import RetryConfig
from reminder_pipeline.metrics import update_connection_status

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Broker connection states."""

    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    PERMANENTLY_FAILED = "permanently_failed"

    @property
    def code(self) -> int:
        """Numeric value exported as a gauge."""
        return {
            ConnectionStatus.UNCONNECTED: 0,
            ConnectionStatus.CONNECTED: 1,
            ConnectionStatus.PERMANENTLY_FAILED: 2,
        }[self]


class ConnectionState:
    """
    Concurrency-safe connection status cell.

    Example:
        >>> state = ConnectionState("producer", RetryConfig(max_attempts=3))
        >>> if await state.ensure_connected(client.start):
        ...     await client.send(...)
    """

    def __init__(
        self,
        component: str,
        retry: RetryConfig,
        failure_cooldown_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.component = component
        self.retry = retry
        self.failure_cooldown_seconds = failure_cooldown_seconds
        self._sleep = sleep
        self._clock = clock

        self._status = ConnectionStatus.UNCONNECTED
        self._failed_at: Optional[float] = None
        self._lock = asyncio.Lock()
        update_connection_status(component, self._status.code)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def connecting(self) -> bool:
        """True while another task is running the attempt series."""
        return self._lock.locked()

    def seconds_until_retry(self) -> Optional[float]:
        """Remaining cooldown when permanently failed, else None.

        Returns None as well when re-attempts are disabled.
        """
        if self._status != ConnectionStatus.PERMANENTLY_FAILED:
            return None
        if self.failure_cooldown_seconds <= 0 or self._failed_at is None:
            return None
        elapsed = self._clock() - self._failed_at
        return max(0.0, self.failure_cooldown_seconds - elapsed)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        previous = self._status
        self._status = status
        update_connection_status(self.component, status.code)
        log_with_context(
            logger,
            logging.INFO if status != ConnectionStatus.PERMANENTLY_FAILED else logging.ERROR,
            f"Broker {self.component} connection {status.value}",
            connection_status=status.value,
            previous_status=previous.value,
        )

    def _cooldown_elapsed(self) -> bool:
        remaining = self.seconds_until_retry()
        return remaining is not None and remaining <= 0

    async def ensure_connected(self, connect: Callable[[], Awaitable[None]]) -> bool:
        """
        Return True once connected, running ``connect`` with backoff if needed.

        Returns False without waiting when another task is already running
        the attempt series, and when the connection is permanently failed
        and still cooling down.

        Args:
            connect: Coroutine factory that starts the underlying client and
                raises on failure
        """
        if self._status == ConnectionStatus.CONNECTED:
            return True
        if self._lock.locked():
            return False

        async with self._lock:
            if self._status == ConnectionStatus.CONNECTED:
                return True

            if self._status == ConnectionStatus.PERMANENTLY_FAILED:
                if not self._cooldown_elapsed():
                    return False
                log_with_context(
                    logger,
                    logging.INFO,
                    f"Retrying broker {self.component} connection after cooldown",
                    delay_seconds=self.failure_cooldown_seconds,
                )
                self._set_status(ConnectionStatus.UNCONNECTED)

            for attempt in range(1, self.retry.max_attempts + 1):
                try:
                    await connect()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        f"Broker {self.component} connection attempt failed",
                        level=logging.WARNING,
                        include_traceback=False,
                        attempt=attempt,
                        max_attempts=self.retry.max_attempts,
                    )
                    if attempt < self.retry.max_attempts:
                        delay = self.retry.delay_for(attempt)
                        log_with_context(
                            logger,
                            logging.DEBUG,
                            "Backing off before next connection attempt",
                            attempt=attempt,
                            delay_seconds=round(delay, 2),
                        )
                        await self._sleep(delay)
                    continue

                self._failed_at = None
                self._set_status(ConnectionStatus.CONNECTED)
                return True

            self._failed_at = self._clock()
            self._set_status(ConnectionStatus.PERMANENTLY_FAILED)
            return False

    def mark_disconnected(self) -> None:
        """Record that the client was closed and must be started again."""
        self._set_status(ConnectionStatus.UNCONNECTED)

    def reset(self) -> None:
        """Clear a permanent failure so the next call attempts again."""
        self._failed_at = None
        self._set_status(ConnectionStatus.UNCONNECTED)
