"""
Core modules for the async-first broker client.
"""

from .value import Kind, Value, ValueType
from .message import BrokerMessage, MessageType, View, APP_NAME
from .metadata import EntryType, Metadata
from .codec import Codec, MsgpackCodec
from .transport import Transport, ZmqTransport
from .config import ClientConfig, ReconnectMode, ReconnectPolicy
from .connection import Connection, ConnectionState
from .queue import QueueReader, SubscriptionQueue
from .multiplexer import Multiplexer, Subscription
from .stream import Stream
from .client import Client
from .sync_wrapper import SyncClient, SyncStream, SyncWrapper
from .errors import (
    BrokerLinkError,
    ClientClosed,
    ConnectError,
    ConnectionLost,
    ConnectTimeout,
    DecodeError,
    FramingError,
    RangeError,
    ReconnectFailed,
    RemoteError,
    SubscribeError,
    SubscriptionOverflow,
    Timeout,
    TransportClosed,
    TransportError,
    TypeMismatch,
)
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    "Kind",
    "Value",
    "ValueType",
    "BrokerMessage",
    "MessageType",
    "View",
    "APP_NAME",
    "EntryType",
    "Metadata",
    "Codec",
    "MsgpackCodec",
    "Transport",
    "ZmqTransport",
    "ClientConfig",
    "ReconnectMode",
    "ReconnectPolicy",
    "Connection",
    "ConnectionState",
    "QueueReader",
    "SubscriptionQueue",
    "Multiplexer",
    "Subscription",
    "Stream",
    "Client",
    "SyncClient",
    "SyncStream",
    "SyncWrapper",
    # Errors
    "BrokerLinkError",
    "ClientClosed",
    "ConnectError",
    "ConnectionLost",
    "ConnectTimeout",
    "DecodeError",
    "FramingError",
    "RangeError",
    "ReconnectFailed",
    "RemoteError",
    "SubscribeError",
    "SubscriptionOverflow",
    "Timeout",
    "TransportClosed",
    "TransportError",
    "TypeMismatch",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]
