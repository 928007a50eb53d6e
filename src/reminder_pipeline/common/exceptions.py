"""
Common exception types and error classification for reminder_pipeline.

Provides:
- ErrorCategory enum for handling decisions
- Typed exception hierarchy for pipeline errors
- Error classification utilities
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures; skip for now and try again later
                   (e.g., broker unreachable, store timeout)
        AUTH: Authentication failures (e.g., SASL credentials rejected)
        PERMANENT: Failures that won't succeed on retry
                   (e.g., malformed message, invalid configuration)
        CIRCUIT_OPEN: Circuit breaker is open, rejecting fast without attempting
        UNKNOWN: Unclassified errors, retried conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for handling decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether a later attempt may succeed."""
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.CIRCUIT_OPEN,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthError(PipelineError):
    """Broker or store rejected the supplied credentials."""

    category = ErrorCategory.AUTH


# =============================================================================
# Transient Infrastructure Errors
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient infrastructure errors."""

    category = ErrorCategory.TRANSIENT


class BrokerUnavailableError(TransientError):
    """Broker connection could not be established or was lost."""

    pass


class StoreQueryError(TransientError):
    """Overdue task query against the store failed."""

    pass


class TimeoutError(TransientError):
    """Operation timed out."""

    pass


# =============================================================================
# Processing Errors
# =============================================================================


class NotificationError(PipelineError):
    """Notification side effect failed; the delivery should be retried."""

    category = ErrorCategory.TRANSIENT


# =============================================================================
# Permanent Errors
# =============================================================================


class PermanentError(PipelineError):
    """Base class for errors that cannot succeed on retry."""

    category = ErrorCategory.PERMANENT


class MalformedMessageError(PermanentError):
    """Delivered payload could not be decoded into a reminder message."""

    pass


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


class DeliveryAlreadySettledError(PermanentError):
    """Delivery was acked or nacked more than once."""

    pass


# =============================================================================
# Circuit Breaker Errors
# =============================================================================


class CircuitOpenError(PipelineError):
    """Circuit breaker is open, rejecting requests."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(
        self,
        circuit_name: str,
        retry_after: float,
        cause: Optional[Exception] = None,
    ):
        message = f"Circuit '{circuit_name}' is open"
        super().__init__(message, cause, {"circuit_name": circuit_name})
        self.circuit_name = circuit_name
        self.retry_after = retry_after


# =============================================================================
# Error Classification Utilities
# =============================================================================

_CONNECTION_MARKERS = (
    "connectionerror",
    "kafkaconnectionerror",
    "nobrokersavailable",
    "connection refused",
    "connection reset",
    "connection aborted",
    "no route to host",
    "network unreachable",
    "name resolution",
    "unable to bootstrap",
    "broken pipe",
    "operationalerror",
)

_AUTH_MARKERS = (
    "saslauthenticationfailed",
    "authentication",
    "unauthorized",
    "invalid credentials",
    "password authentication failed",
)

_PERMANENT_MARKERS = (
    "validationerror",
    "jsondecodeerror",
    "unicodedecodeerror",
    "topicauthorizationfailed",
    "recordtoolarge",
)


def classify_exception(exc: Exception) -> ErrorCategory:
    """
    Classify an exception into an error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if any(m in exc_type or m in exc_str for m in _AUTH_MARKERS):
        return ErrorCategory.AUTH

    if any(m in exc_type for m in _PERMANENT_MARKERS):
        return ErrorCategory.PERMANENT

    if any(m in exc_type or m in exc_str for m in _CONNECTION_MARKERS):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timed out" in exc_str:
        return ErrorCategory.TRANSIENT

    # aiokafka marks recoverable broker errors with a class attribute
    if getattr(exc, "retriable", False):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: Optional[dict] = None,
) -> PipelineError:
    """
    Wrap a generic exception in the appropriate PipelineError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use if it can't be classified
        context: Additional context to include

    Returns:
        PipelineError subclass instance
    """
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)

    if category == ErrorCategory.AUTH:
        return AuthError(str(exc), cause=exc, context=context)
    if category == ErrorCategory.TRANSIENT:
        if "timeout" in type(exc).__name__.lower() or "timed out" in str(exc).lower():
            return TimeoutError(str(exc), cause=exc, context=context)
        if issubclass(default_class, TransientError):
            return default_class(str(exc), cause=exc, context=context)
        return BrokerUnavailableError(str(exc), cause=exc, context=context)
    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)
