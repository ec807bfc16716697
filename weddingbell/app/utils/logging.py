"""
Structured logging system for the WeddingBell notification service.

This module provides:
- Structured JSON logging with correlation IDs
- Context-aware logging that survives asyncio task switches
- Performance monitoring for queue lanes and channel sends
- Console-friendly output for development
- WebSocket presence tracking
- Delivery outcome tracking for the notification pipeline
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler


# Correlation ID and performance context follow the current asyncio task
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_performance_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "performance_context", default=None
)

# Rich console for enhanced output
console = Console()


class CorrelationIDProcessor:
    """Structlog processor to add correlation IDs to log records."""

    def __call__(self, logger, method_name, event_dict):
        """Add correlation ID to the log event."""
        correlation_id = get_correlation_id()
        if correlation_id:
            event_dict["correlation_id"] = correlation_id
        return event_dict


class TimestampProcessor:
    """Structlog processor to add ISO timestamps to log records."""

    def __call__(self, logger, method_name, event_dict):
        """Add ISO timestamp to the log event."""
        event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
        return event_dict


class PerformanceProcessor:
    """Structlog processor to add performance metrics to log records."""

    def __call__(self, logger, method_name, event_dict):
        """Add performance context if available."""
        perf_context = _performance_context.get()
        if perf_context:
            for key, value in perf_context.items():
                event_dict.setdefault(key, value)
        return event_dict


class WeddingBellLogFormatter:
    """
    Log formatter for structured JSON output with rich console support.

    Provides both machine-readable JSON logs and human-readable console output
    for development convenience.
    """

    LEVEL_COLORS = {
        "DEBUG": "dim white",
        "INFO": "blue",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold red",
    }

    def __init__(self, use_json: bool = False, use_colors: bool = True):
        """
        Initialize the formatter.

        Args:
            use_json: Output structured JSON logs
            use_colors: Use colors in console output
        """
        self.use_json = use_json
        self.use_colors = use_colors

    def __call__(self, _, __, event_dict):
        """Format the log event for output."""
        if self.use_json:
            return json.dumps(event_dict, default=str)
        return self._format_console_output(event_dict)

    def _format_console_output(self, event_dict: Dict[str, Any]) -> str:
        """Format log event for console output with colors and structure."""
        timestamp = event_dict.get("timestamp", "")
        level = event_dict.get("level", "INFO").upper()
        logger_name = event_dict.get("logger", "")
        correlation_id = event_dict.get("correlation_id", "")
        event = event_dict.get("event", "")

        parts = []

        if timestamp:
            parts.append(f"[dim]{timestamp[:19]}[/dim]")

        level_color = self.LEVEL_COLORS.get(level, "white")
        parts.append(f"[{level_color}]{level:8}[/{level_color}]")

        if logger_name:
            parts.append(f"[cyan]{logger_name}[/cyan]")

        if correlation_id:
            parts.append(f"[magenta]{correlation_id[:8]}[/magenta]")

        parts.append(f"[white]{event}[/white]")

        # Additional context (excluding standard fields)
        context_fields = {
            k: v for k, v in event_dict.items()
            if k not in {"timestamp", "level", "logger", "correlation_id", "event"}
        }

        if context_fields:
            context_str = " ".join(f"{k}={v}" for k, v in context_fields.items())
            parts.append(f"[dim]{context_str}[/dim]")

        return " ".join(parts)


def setup_logging(
    level: str = "INFO",
    use_json: bool = False,
    log_file: Optional[Path] = None,
    enable_correlation_ids: bool = True
) -> None:
    """
    Setup structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Output structured JSON logs
        log_file: Optional file path for log output
        enable_correlation_ids: Enable correlation ID tracking
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        TimestampProcessor(),
    ]

    if enable_correlation_ids:
        processors.append(CorrelationIDProcessor())

    processors.append(PerformanceProcessor())

    if use_json:
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(WeddingBellLogFormatter(use_json=use_json))

    log_level = getattr(logging, level.upper())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.WriteLoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # Configure standard logging for third-party libraries
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if not use_json:
        rich_handler = RichHandler(
            console=console,
            show_time=False,
            show_path=False,
            rich_tracebacks=True,
            markup=True
        )
        rich_handler.setLevel(log_level)
        root_logger.addHandler(rich_handler)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog bound logger
    """
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for the current task/request.

    Args:
        correlation_id: Optional correlation ID, generates UUID if None

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())

    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID for the current task/request."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID for the current task/request."""
    _correlation_id.set(None)


@contextmanager
def correlation_context(correlation_id: Optional[str] = None):
    """
    Context manager for correlation ID scoping.

    Args:
        correlation_id: Optional correlation ID, generates UUID if None

    Usage:
        with correlation_context(notification.id):
            logger.info("This log will carry the notification id")
    """
    token = _correlation_id.set(correlation_id or str(uuid.uuid4()))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


@contextmanager
def performance_context(
    operation: str,
    **context: Any
):
    """
    Context manager for performance monitoring.

    Args:
        operation: Name of the operation being measured
        **context: Additional context to include in logs

    Usage:
        with performance_context("channel_send", channel="email"):
            ...
    """
    start_time = time.time()
    logger = get_logger("performance")

    perf_context = {"operation": operation, **context}
    token = _performance_context.set(perf_context)

    logger.debug("Operation started", **perf_context)

    try:
        yield perf_context
    except Exception as e:
        logger.error(
            "Operation failed",
            operation=operation,
            duration=round(time.time() - start_time, 4),
            error=str(e),
            **context
        )
        raise
    else:
        logger.debug(
            "Operation completed",
            operation=operation,
            duration=round(time.time() - start_time, 4),
            **context
        )
    finally:
        _performance_context.reset(token)


class WebSocketLogger:
    """Specialized logger for WebSocket connections and presence events."""

    def __init__(self):
        self.logger = get_logger("websocket")

    def connection_established(self, connection_id: str, user_id: Optional[str] = None):
        """Log WebSocket connection establishment."""
        self.logger.info(
            "WebSocket connection established",
            connection_id=connection_id,
            user_id=user_id,
            event_type="connection_established"
        )

    def connection_closed(
        self,
        connection_id: str,
        reason: Optional[str] = None,
        code: Optional[int] = None
    ):
        """Log WebSocket connection closure."""
        self.logger.info(
            "WebSocket connection closed",
            connection_id=connection_id,
            reason=reason,
            code=code,
            event_type="connection_closed"
        )

    def room_joined(self, connection_id: str, user_id: str, room: str):
        self.logger.debug(
            "Room joined",
            connection_id=connection_id,
            user_id=user_id,
            room=room,
            event_type="room_joined"
        )

    def room_denied(self, connection_id: str, user_id: Optional[str], room: str):
        self.logger.warning(
            "Room join denied",
            connection_id=connection_id,
            user_id=user_id,
            room=room,
            event_type="room_denied"
        )

    def error_occurred(
        self,
        connection_id: str,
        error: str,
        error_code: Optional[str] = None
    ):
        """Log WebSocket errors."""
        self.logger.error(
            "WebSocket error occurred",
            connection_id=connection_id,
            error=error,
            error_code=error_code,
            event_type="error"
        )


class DatabaseLogger:
    """Specialized logger for database and queue backend operations."""

    def __init__(self):
        self.logger = get_logger("database")

    def connection_established(self, database_type: str, database_name: str):
        """Log database connection establishment."""
        self.logger.info(
            "Database connection established",
            database_type=database_type,
            database_name=database_name,
            event_type="connection_established"
        )

    def connection_failed(self, database_type: str, error: str):
        """Log database connection failure."""
        self.logger.error(
            "Database connection failed",
            database_type=database_type,
            error=error,
            event_type="connection_failed"
        )


def initialize_logging_from_settings(settings: Optional[Any] = None) -> None:
    """Initialize logging using application settings."""
    if settings is None:
        from weddingbell.config.settings import get_settings
        settings = get_settings()

    setup_logging(
        level=settings.logging.level,
        use_json=settings.logging.use_json,
        log_file=Path(settings.logging.log_file) if settings.logging.log_file else None,
        enable_correlation_ids=settings.logging.enable_correlation_ids
    )

    logger = get_logger(__name__)
    logger.info(
        "Logging system initialized",
        level=settings.logging.level,
        correlation_ids_enabled=settings.logging.enable_correlation_ids
    )


def log_delivery_outcome(
    notification_id: str,
    channel: Optional[str],
    outcome: str,
    retry_count: int = 0,
    error: Optional[str] = None,
    **context: Any
) -> None:
    """
    Log a delivery outcome for the notification pipeline.

    Failed outcomes are logged as warnings so they stand out in the console;
    everything else is informational.

    Args:
        notification_id: Notification identifier
        channel: Channel name, or None for notification-level outcomes
        outcome: Outcome recorded in the delivery log
        retry_count: Number of retries performed by the channel sender
        error: Error message if the delivery failed
        **context: Additional context for the event
    """
    delivery_logger = get_logger("delivery")

    event_context = {
        "notification_id": notification_id,
        "channel": channel,
        "outcome": outcome,
        "retry_count": retry_count,
        "event_type": "delivery_outcome",
    }
    if error:
        event_context["error"] = error
    event_context.update(context)

    if outcome == "failed":
        delivery_logger.warning("Delivery outcome", **event_context)
    else:
        delivery_logger.info("Delivery outcome", **event_context)
