"""
Custom exception classes for the WeddingBell notification service.

This module defines the exception hierarchy used across the service:
- Domain-specific exceptions for queueing, templating and channel delivery
- HTTP status code mapping for API responses
- Structured error information with context
- Retry classification for channel senders and backend connections
"""

import random
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for the notification service.

    These codes provide consistent error identification across the HTTP API,
    the WebSocket protocol and the delivery log.
    """

    # Configuration Errors (1xxx)
    CONFIG_VALIDATION_FAILED = "1001"
    CONFIG_MISSING_REQUIRED = "1005"

    # Database Errors (2xxx)
    DATABASE_CONNECTION_ERROR = "2001"
    DATABASE_OPERATION_FAILED = "2002"
    DATABASE_TIMEOUT = "2004"

    # Queue Errors (3xxx)
    QUEUE_BACKEND_UNAVAILABLE = "3001"
    QUEUE_OPERATION_FAILED = "3002"
    QUEUE_UNKNOWN_LANE = "3003"

    # Notification, Template and Channel Errors (4xxx)
    NOTIFICATION_VALIDATION_FAILED = "4001"
    NOTIFICATION_NOT_FOUND = "4002"
    NOTIFICATION_DELIVERY_FAILED = "4003"
    NOTIFICATION_CHANNEL_UNAVAILABLE = "4004"
    NOTIFICATION_PERMANENT_FAILURE = "4005"
    TEMPLATE_NOT_FOUND = "4101"
    TEMPLATE_COMPILE_FAILED = "4102"
    TEMPLATE_RENDER_FAILED = "4103"

    # Rule Errors (5xxx)
    RULE_INVALID = "5001"
    RULE_EVALUATION_FAILED = "5002"

    # WebSocket Errors (7xxx)
    WEBSOCKET_CONNECTION_FAILED = "7001"
    WEBSOCKET_MESSAGE_INVALID = "7002"
    WEBSOCKET_AUTHENTICATION_FAILED = "7003"
    WEBSOCKET_RATE_LIMIT_EXCEEDED = "7004"
    WEBSOCKET_ROOM_FORBIDDEN = "7005"

    # Authentication & Authorization Errors (8xxx)
    AUTH_INVALID_CREDENTIALS = "8001"
    AUTH_TOKEN_EXPIRED = "8002"
    AUTH_INSUFFICIENT_PERMISSIONS = "8003"

    # Resource Errors (9xxx)
    RESOURCE_UNAVAILABLE = "9003"


class BaseCustomException(Exception):
    """
    Base exception class for all custom exceptions in the notification service.

    Provides common functionality for error tracking, context preservation,
    and structured error information.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        http_status_code: int = 500,
        correlation_id: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize base exception with structured error information.

        Args:
            message: Technical error message for developers
            error_code: Standardized error code for identification
            details: Additional context and debugging information
            http_status_code: HTTP status code for API responses
            correlation_id: Request correlation ID for tracking
            user_message: User-friendly error message for display
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.http_status_code = http_status_code
        self.correlation_id = correlation_id
        self.user_message = user_message or self._generate_user_message()
        self.traceback_info = traceback.format_exc()

    def _generate_user_message(self) -> str:
        """Generate a user-friendly error message based on the error code."""
        user_messages = {
            ErrorCode.CONFIG_VALIDATION_FAILED: "Configuration validation failed. Please check your settings.",
            ErrorCode.DATABASE_CONNECTION_ERROR: "Unable to connect to the database. Please try again later.",
            ErrorCode.QUEUE_BACKEND_UNAVAILABLE: "Notification queue is unavailable. Please try again later.",
            ErrorCode.NOTIFICATION_VALIDATION_FAILED: "The notification request is invalid.",
            ErrorCode.NOTIFICATION_NOT_FOUND: "The requested notification could not be found.",
            ErrorCode.TEMPLATE_NOT_FOUND: "No template is available for this notification.",
            ErrorCode.TEMPLATE_COMPILE_FAILED: "The template could not be compiled.",
            ErrorCode.WEBSOCKET_AUTHENTICATION_FAILED: "Authentication failed for the real-time connection.",
            ErrorCode.WEBSOCKET_ROOM_FORBIDDEN: "You are not allowed to join this room.",
        }
        if self.message and self.error_code in (
            ErrorCode.NOTIFICATION_VALIDATION_FAILED,
            ErrorCode.TEMPLATE_COMPILE_FAILED,
            ErrorCode.RULE_INVALID,
        ):
            return self.message
        return user_messages.get(self.error_code, "An unexpected error occurred. Please contact support.")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "http_status_code": self.http_status_code,
            "correlation_id": self.correlation_id,
        }

    def add_context(self, key: str, value: Any) -> None:
        """Add additional context to the exception details."""
        self.details[key] = value

    def __str__(self) -> str:
        """String representation of the exception."""
        return f"[{self.error_code.value}] {self.message}"


class ConfigurationError(BaseCustomException):
    """Exception raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
        config_section: Optional[str] = None,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs
    ):
        details = {
            "config_section": config_section,
            "config_key": config_key,
            "config_value": str(config_value) if config_value is not None else None,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=400,
            **kwargs
        )


class DatabaseError(BaseCustomException):
    """Exception raised for database-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED,
        database_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        details = {
            "database_type": database_type,
            "collection_name": collection_name,
            "operation": operation,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=503 if error_code == ErrorCode.DATABASE_CONNECTION_ERROR else 500,
            **kwargs
        )


class QueueBackendError(BaseCustomException):
    """
    Exception raised when the priority queue backend cannot be reached.

    This is never retried silently: the dispatcher raises an alarm and stops
    the affected lane, and ``send`` propagates it to the caller.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.QUEUE_BACKEND_UNAVAILABLE,
        lane: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        details = {
            "lane": lane,
            "operation": operation,
        }
        status_map = {
            ErrorCode.QUEUE_BACKEND_UNAVAILABLE: 503,
            ErrorCode.QUEUE_UNKNOWN_LANE: 400,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=status_map.get(error_code, 500),
            **kwargs
        )


class ValidationError(BaseCustomException):
    """Exception raised for data validation errors."""

    def __init__(
        self,
        message: str,
        field_errors: Optional[List[Dict[str, Any]]] = None,
        error_code: ErrorCode = ErrorCode.NOTIFICATION_VALIDATION_FAILED,
        **kwargs
    ):
        details = {
            "field_errors": field_errors or [],
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=422,
            **kwargs
        )


class NotificationError(BaseCustomException):
    """Exception raised for notification system errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.NOTIFICATION_DELIVERY_FAILED,
        notification_id: Optional[str] = None,
        channel: Optional[str] = None,
        recipient: Optional[str] = None,
        notification_type: Optional[str] = None,
        delivery_attempts: Optional[int] = None,
        **kwargs
    ):
        details = {
            "notification_id": notification_id,
            "channel": channel,
            "recipient": recipient,
            "notification_type": notification_type,
            "delivery_attempts": delivery_attempts,
        }

        status_map = {
            ErrorCode.NOTIFICATION_DELIVERY_FAILED: 502,
            ErrorCode.NOTIFICATION_NOT_FOUND: 404,
            ErrorCode.NOTIFICATION_CHANNEL_UNAVAILABLE: 503,
        }

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=status_map.get(error_code, 500),
            **kwargs
        )


class ChannelDeliveryError(NotificationError):
    """Transient provider failure; the channel sender may retry it."""


class PermanentDeliveryError(NotificationError):
    """Provider failure that must never be retried (gone subscription, invalid number)."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.NOTIFICATION_PERMANENT_FAILURE)
        super().__init__(message, **kwargs)


class TemplateError(BaseCustomException):
    """Exception raised for template compilation and rendering errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.TEMPLATE_RENDER_FAILED,
        notification_type: Optional[str] = None,
        channel: Optional[str] = None,
        language: Optional[str] = None,
        **kwargs
    ):
        details = {
            "notification_type": notification_type,
            "channel": channel,
            "language": language,
        }
        status_map = {
            ErrorCode.TEMPLATE_NOT_FOUND: 404,
            ErrorCode.TEMPLATE_COMPILE_FAILED: 400,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=status_map.get(error_code, 500),
            **kwargs
        )


class TemplateNotFoundError(TemplateError):
    """No template matched a (type, channel, language) key, generic fallback included."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.TEMPLATE_NOT_FOUND)
        super().__init__(message, **kwargs)


class RuleEvaluationError(BaseCustomException):
    """Exception raised when a routing rule is malformed or cannot be evaluated."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.RULE_EVALUATION_FAILED,
        rule_id: Optional[str] = None,
        condition: Optional[str] = None,
        **kwargs
    ):
        details = {
            "rule_id": rule_id,
            "condition": condition,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=400 if error_code == ErrorCode.RULE_INVALID else 500,
            **kwargs
        )


class WebSocketError(BaseCustomException):
    """Exception raised for WebSocket-related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.WEBSOCKET_CONNECTION_FAILED,
        connection_id: Optional[str] = None,
        user_id: Optional[str] = None,
        **kwargs
    ):
        details = {
            "connection_id": connection_id,
            "user_id": user_id,
        }
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=400,
            **kwargs
        )


class AuthenticationError(BaseCustomException):
    """Exception raised for authentication and authorization errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIALS,
        user_id: Optional[str] = None,
        **kwargs
    ):
        details = {
            "user_id": user_id,
        }

        status_map = {
            ErrorCode.AUTH_INVALID_CREDENTIALS: 401,
            ErrorCode.AUTH_TOKEN_EXPIRED: 401,
            ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS: 403,
        }

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            http_status_code=status_map.get(error_code, 401),
            **kwargs
        )


# Utility functions to check error types and determine retry behavior

def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is retryable based on its type and code.

    Args:
        error: Exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(error, PermanentDeliveryError):
        return False

    if isinstance(error, BaseCustomException):
        retryable_codes = {
            ErrorCode.DATABASE_TIMEOUT,
            ErrorCode.DATABASE_CONNECTION_ERROR,
            ErrorCode.WEBSOCKET_CONNECTION_FAILED,
            ErrorCode.RESOURCE_UNAVAILABLE,
            ErrorCode.NOTIFICATION_DELIVERY_FAILED,
            ErrorCode.NOTIFICATION_CHANNEL_UNAVAILABLE,
        }
        return error.error_code in retryable_codes

    # Standard exceptions that are typically retryable
    retryable_types = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    return isinstance(error, retryable_types)


def get_retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Current attempt number (1-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds for the next retry
    """
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)

    # Jitter to prevent thundering herd
    jitter = random.uniform(0.8, 1.2)

    return delay * jitter


def get_exception_response_data(exception: BaseCustomException) -> Dict[str, Any]:
    """
    Extract response data from a custom exception for API responses.

    Args:
        exception: Custom exception instance

    Returns:
        Dictionary containing structured error data
    """
    return {
        "success": False,
        "error": {
            "code": exception.error_code.value,
            "message": exception.user_message,
            "details": exception.details,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": exception.correlation_id,
    }


# Convenience functions for common exception patterns

def raise_database_error(
    message: str,
    database_type: Optional[str] = None,
    operation: Optional[str] = None,
    collection_name: Optional[str] = None,
    error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED
) -> None:
    """Raise a database error with context."""
    raise DatabaseError(
        message=message,
        database_type=database_type,
        operation=operation,
        collection_name=collection_name,
        error_code=error_code
    )


def raise_template_compile_error(
    message: str,
    notification_type: Optional[str] = None,
    channel: Optional[str] = None,
    language: Optional[str] = None
) -> None:
    """Raise a template compilation error."""
    raise TemplateError(
        message=message,
        error_code=ErrorCode.TEMPLATE_COMPILE_FAILED,
        notification_type=notification_type,
        channel=channel,
        language=language
    )
