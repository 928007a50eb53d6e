"""
Circuit breaker for broker sends.

Protects against scenarios like:
- Broker outage causing every publish in a scan cycle to time out
- Network partitions between the service and the cluster

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Failing, requests rejected immediately (fast-fail)
- HALF_OPEN: Testing recovery, limited requests allowed

Usage:
    breaker = get_circuit_breaker("reminder_producer", BROKER_CIRCUIT_CONFIG)
    metadata = await breaker.call_async(lambda: producer.send_and_wait(...))
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from reminder_pipeline.common.exceptions import (
    CircuitOpenError,
    ErrorCategory,
    classify_exception,
)
from reminder_pipeline.common.logging import log_exception, log_with_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    # Number of consecutive failures before opening circuit
    failure_threshold: int = 5

    # Number of successes in half-open before closing
    success_threshold: int = 2

    # Seconds to wait in open state before testing
    timeout_seconds: float = 30.0

    # Max concurrent calls allowed in half-open
    half_open_max_calls: int = 3

    # Error categories that count as failures (None = transient/unknown)
    failure_categories: Optional[tuple] = None


# Broker sends
# - All publishes share one cluster, so failures are systematic
# - 60s open window roughly matches broker restart time
BROKER_CIRCUIT_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    success_threshold=1,
    timeout_seconds=60.0,
    half_open_max_calls=1,
)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    current_state: str = "closed"


class CircuitBreaker:
    """
    Circuit breaker with exception-aware failure tracking.

    Thread-safe for concurrent access. The lock is never held across an
    await, so one breaker can be shared by many tasks on the same loop.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_calls = 0

        self._stats = CircuitStats()
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state (may transition on access)."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        """Get copy of current statistics."""
        with self._lock:
            self._check_state_transition()
            return CircuitStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                state_changes=self._stats.state_changes,
                current_state=self._state.value,
            )

    def _should_count_failure(self, exc: Exception) -> bool:
        category = classify_exception(exc)
        if self.config.failure_categories:
            return category in self.config.failure_categories
        # Permanent errors are bad input, not an unhealthy broker
        return category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )

    def _check_state_transition(self) -> None:
        """Move OPEN -> HALF_OPEN once the timeout elapsed (called under lock)."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.config.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to new state (called under lock)."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._stats.state_changes += 1
        self._stats.current_state = new_state.value

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
        else:
            self._success_count = 0

        log_with_context(
            logger,
            logging.WARNING if new_state == CircuitState.OPEN else logging.INFO,
            f"Circuit {new_state.value.replace('_', '-')}",
            circuit_name=self.name,
            circuit_state=new_state.value,
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Error in circuit state change callback",
                    level=logging.WARNING,
                    include_traceback=False,
                    circuit_name=self.name,
                )

    def _record_success(self) -> None:
        self._stats.successful_calls += 1
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def _record_failure(self, exc: Exception) -> None:
        self._stats.failed_calls += 1
        if not self._should_count_failure(exc):
            return

        self._last_failure_time = time.monotonic()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _acquire(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        with self._lock:
            self._stats.total_calls += 1
            self._check_state_transition()

            if self._state == CircuitState.CLOSED:
                return
            if (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_calls < self.config.half_open_max_calls
            ):
                self._half_open_calls += 1
                return

            self._stats.rejected_calls += 1
            raise CircuitOpenError(self.name, self._get_retry_after())

    def _get_retry_after(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = time.monotonic() - self._last_failure_time
        return max(0.0, self.config.timeout_seconds - elapsed)

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await a coroutine factory through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Any exception from the awaited call
        """
        self._acquire()
        try:
            result = await func()
        except Exception as e:
            with self._lock:
                self._record_failure(e)
            raise
        with self._lock:
            self._record_success()
        return result

    def reset(self) -> None:
        """Manually reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None


# =============================================================================
# Circuit Breaker Registry
# =============================================================================

_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(
    name: str,
    config: Optional[CircuitBreakerConfig] = None,
    on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
) -> CircuitBreaker:
    """
    Get or create a named circuit breaker.

    Args:
        name: Unique name for the circuit breaker
        config: Configuration (only used on first creation)
        on_state_change: Callback (only used on first creation)

    Returns:
        CircuitBreaker instance
    """
    with _registry_lock:
        if name not in _breakers:
            _breakers[name] = CircuitBreaker(name, config, on_state_change)
            log_with_context(
                logger,
                logging.DEBUG,
                "Created circuit breaker",
                circuit_name=name,
            )
        return _breakers[name]


def reset_circuit_breakers() -> None:
    """Drop all registered circuit breakers (tests)."""
    with _registry_lock:
        _breakers.clear()
