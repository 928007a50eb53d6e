"""Resilience patterns for reminder_pipeline."""

from reminder_pipeline.common.resilience.circuit_breaker import (
    BROKER_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_circuit_breaker,
    reset_circuit_breakers,
)
from reminder_pipeline.common.resilience.retry import DEFAULT_RETRY, RetryConfig

__all__ = [
    "BROKER_CIRCUIT_CONFIG",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "get_circuit_breaker",
    "reset_circuit_breakers",
    "DEFAULT_RETRY",
    "RetryConfig",
]
