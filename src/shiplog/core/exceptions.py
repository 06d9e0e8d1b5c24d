"""
Custom exceptions for the log shipper.

Provides structured errors with a stable error code and details
for hosts that report them.
"""

from typing import Any, Dict, Optional


class ShiplogException(Exception):
    """Base exception for the log shipper."""

    def __init__(
        self,
        message: str,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class QueueError(ShiplogException):
    """Raised when a queue adapter operation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            error_code="queue_error",
            details=details,
        )


class DeliveryError(ShiplogException):
    """Raised when an output handler fails to deliver a batch."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            error_code="delivery_error",
            details=details,
        )


class RetryExhaustedError(ShiplogException):
    """Raised when a batch could not be delivered within max_retry."""

    def __init__(
        self,
        message: str = "retry count exceeded max retry",
        attempts: int = 0,
        batch_size: int = 0,
        last_error: Optional[BaseException] = None,
    ) -> None:
        details: Dict[str, Any] = {"attempts": attempts, "batch_size": batch_size}
        if last_error is not None:
            details["last_error"] = str(last_error)
            details["last_error_type"] = type(last_error).__name__

        super().__init__(
            message=message,
            error_code="retry_exhausted",
            details=details,
        )
        self.attempts = attempts
        self.batch_size = batch_size
        self.last_error = last_error


class ShipperStateError(ShiplogException):
    """Raised when the shipper is used out of lifecycle order."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            error_code="invalid_state",
            details=details,
        )
