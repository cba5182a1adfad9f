"""
Exception types and error classification for kafka_retry.

Provides:
- ErrorCategory enum used for logging and reporting
- Typed exception hierarchy for every failure the retry layer surfaces
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """
    Classification of error types raised by the retry layer.

    Categories:
        TRANSIENT: Failures that may succeed on a later delivery
                   (handler errors, publish failures)
        PERMANENT: Failures that will not fix themselves
                   (validation errors, DLQ handler errors)
        CONFIG: Invalid configuration or API misuse
        UNKNOWN: Unclassified errors
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIG = "config"
    UNKNOWN = "unknown"


class RetryCommanderError(Exception):
    """
    Base exception for all retry layer errors.

    Attributes:
        message: Human-readable error description
        category: Error classification
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Configuration / Lifecycle Errors
# =============================================================================


class ConfigurationError(RetryCommanderError):
    """Invalid configuration."""

    category = ErrorCategory.CONFIG


class LifecycleError(RetryCommanderError):
    """Operation not allowed in the commander's current lifecycle state."""

    category = ErrorCategory.CONFIG


# =============================================================================
# Topology Errors
# =============================================================================


class ProvisioningError(RetryCommanderError):
    """
    Topic creation or deletion was rejected by the broker.

    Carries the provisioning report so callers can see which topics were
    created before the failure. Partial provisioning is never rolled back.
    """

    category = ErrorCategory.CONFIG

    def __init__(
        self,
        message: str,
        report: Any = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, cause, context)
        self.report = report


# =============================================================================
# Dispatch Errors
# =============================================================================


class ValidationError(RetryCommanderError):
    """Payload could not be decoded or failed the configured validator."""

    category = ErrorCategory.PERMANENT


class HandlerError(RetryCommanderError):
    """User message handler raised."""

    category = ErrorCategory.TRANSIENT


class HookError(RetryCommanderError):
    """
    An extension hook raised during a retry or DLQ transition.

    Attributes:
        hook_name: Class name of the failing hook
        stage: Callback that failed (before_retry, after_dlq, ...)
        handler_error: The dispatch failure the transition was handling
    """

    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        hook_name: str,
        stage: str,
        cause: Optional[BaseException] = None,
        handler_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, cause, context)
        self.hook_name = hook_name
        self.stage = stage
        self.handler_error = handler_error

    def __str__(self) -> str:
        text = super().__str__()
        if self.handler_error:
            text = f"{text} | While handling: {self.handler_error}"
        return text


class PublishError(RetryCommanderError):
    """Outbound publish to a retry or DLQ topic failed."""

    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        topic: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, cause, context)
        self.topic = topic


class DLQHandlerError(RetryCommanderError):
    """User DLQ handler raised."""

    category = ErrorCategory.PERMANENT


def error_category_of(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into an error category.

    Args:
        exc: Exception to classify

    Returns:
        The exception's own category for retry layer errors, UNKNOWN otherwise
    """
    if isinstance(exc, RetryCommanderError):
        return exc.category
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "RetryCommanderError",
    "ConfigurationError",
    "LifecycleError",
    "ProvisioningError",
    "ValidationError",
    "HandlerError",
    "HookError",
    "PublishError",
    "DLQHandlerError",
    "error_category_of",
]
