"""
Structured logging with request and subscription context.

Provides JSON-formatted logs with pluggable output handlers.
"""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for broker client operations."""

    # Lifecycle
    CLIENT_START = "client_start"
    CLIENT_STOP = "client_stop"

    # Connection
    CONNECT = "connect"
    CONNECT_FAILED = "connect_failed"
    DISCONNECT = "disconnect"
    RECONNECT_ATTEMPT = "reconnect_attempt"
    RECONNECT_SUCCESS = "reconnect_success"
    RECONNECT_FAILED = "reconnect_failed"
    HEARTBEAT_MISSED = "heartbeat_missed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"

    # Requests
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"
    REQUEST_ERROR = "request_error"
    REQUEST_TIMEOUT = "request_timeout"
    LATE_REPLY = "late_reply"

    # Subscriptions
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    RESUBSCRIBE = "resubscribe"
    QUEUE_OVERFLOW = "queue_overflow"

    # Wire
    DECODE_ERROR = "decode_error"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Correlation
    request_id: Optional[str] = None
    subscription_id: Optional[int] = None

    # Context
    client_id: Optional[str] = None
    address: Optional[str] = None
    operation: Optional[str] = None
    path: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json())
        )

        logger.info(LogEvent.CONNECT, "Connected", address="tcp://localhost:55555")
        logger.warn(LogEvent.QUEUE_OVERFLOW, "Dropped updates", subscription_id=3)

    Integration with Client:
        client = Client("localhost:55555", log_handler=default_pretty_handler)
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        client_id: Optional[str] = None,
        address: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.client_id = client_id
        self.address = address
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: Optional[LogHandler]):
        """Set or update the log handler."""
        self.handler = handler

    def set_level(self, level: LogLevel):
        self.level = level

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        kwargs.setdefault("address", self.address)
        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            client_id=self.client_id,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the client
            print(f"Log handler error: {e}")

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def request_start(self, request_id: str, operation: str, path: Optional[str] = None):
        """Log request start."""
        self.debug(
            LogEvent.REQUEST_START,
            f"Sending {operation}" + (f" {path}" if path else ""),
            request_id=request_id,
            operation=operation,
            path=path,
        )

    def request_end(
        self,
        request_id: str,
        operation: str,
        duration_ms: float,
        path: Optional[str] = None,
        success: bool = True,
        error: Optional[BaseException] = None,
    ):
        """Log request completion."""
        if success:
            event, level = LogEvent.REQUEST_END, LogLevel.DEBUG
        elif isinstance(error, TimeoutError):
            event, level = LogEvent.REQUEST_TIMEOUT, LogLevel.WARN
        else:
            event, level = LogEvent.REQUEST_ERROR, LogLevel.WARN
        self.log(
            event,
            f"{'Completed' if success else 'Failed'} {operation}",
            level=level,
            request_id=request_id,
            operation=operation,
            path=path,
            duration_ms=round(duration_ms, 2),
            success=success,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )

    def connected(self, address: str):
        self.info(LogEvent.CONNECT, f"Connected to {address}", address=address)

    def disconnected(self, reason: str):
        self.warn(LogEvent.DISCONNECT, f"Connection lost: {reason}", error=reason)

    def reconnect_attempt(self, attempt: int, max_attempts: Optional[int], delay: float):
        limit = max_attempts if max_attempts is not None else "unlimited"
        self.info(
            LogEvent.RECONNECT_ATTEMPT,
            f"Reconnecting (attempt {attempt}/{limit}) after {delay:.2f}s",
            metadata={"attempt": attempt, "max": max_attempts, "delay": delay},
        )

    def heartbeat_missed(self, consecutive: int, max_allowed: int):
        self.debug(
            LogEvent.HEARTBEAT_MISSED,
            f"Heartbeat missed ({consecutive}/{max_allowed})",
            metadata={"consecutive": consecutive, "max": max_allowed},
        )

    def subscribed(self, subscription_id: int, path: str):
        self.info(
            LogEvent.SUBSCRIBE,
            f"Subscribed to {path}",
            subscription_id=subscription_id,
            path=path,
        )

    def unsubscribed(self, subscription_id: int, path: str):
        self.info(
            LogEvent.UNSUBSCRIBE,
            f"Unsubscribed from {path}",
            subscription_id=subscription_id,
            path=path,
        )

    def queue_overflow(self, subscription_id: int, path: str, capacity: int):
        self.warn(
            LogEvent.QUEUE_OVERFLOW,
            f"Subscription queue for {path} full, dropped oldest update",
            subscription_id=subscription_id,
            path=path,
            metadata={"capacity": capacity},
        )


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.request_id:
        parts.append(f"req={entry.request_id[:8]}")
    if entry.subscription_id is not None:
        parts.append(f"sub={entry.subscription_id}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts))
