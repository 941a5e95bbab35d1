"""
brokerlink - Client library for remote signal brokers

Read, write and follow named signals ("Vehicle.Speed", "Cabin.Temperature")
exposed by a signal broker, over one ZeroMQ connection with msgpack framing.

## Quick Start

### One-shot reads and writes
```python
from brokerlink import Client, ValueType

client = await Client.connect("localhost:55555")

speed = await client.get_value("Vehicle.Speed", ValueType.FLOAT32)  # 42.0
await client.set_value("Vehicle.Speed", 10.5, ValueType.FLOAT32)     # returns after the ack

await client.close()
```

### Live updates
```python
async with Client("localhost:55555") as client:
    stream = await client.subscribe_value("Vehicle.Speed", float)
    async for speed in stream:
        print(speed)
```

Each subscription gets its own bounded queue. A slow reader loses the oldest
updates and sees one SubscriptionOverflow on its next read; other streams are
not affected.

### Targets and metadata
```python
from brokerlink import View

await client.set_value("Vehicle.Gear", 3, view=View.TARGET)   # ask the actuator to move
meta = await client.get_metadata(["Vehicle.Speed"])
print(meta["Vehicle.Speed"].unit)                               # "km/h"
```

### Reconnect
```python
from brokerlink import Client, ClientConfig, ReconnectPolicy

config = ClientConfig(reconnect=ReconnectPolicy.exponential(delay=0.5, max_attempts=20))
client = await Client.connect("localhost:55555", config)
```

While the link is down streams suspend; after reconnect they resume with new
updates only. A subscription the broker refuses after reconnect ends with
ReconnectFailed. When the policy gives up, every stream ends with ConnectError.

### Blocking API
```python
from brokerlink import SyncClient

with SyncClient("localhost:55555") as client:
    print(client.get_value("Vehicle.Speed"))
    for speed in client.subscribe_value("Vehicle.Speed", float):
        print(speed)
```

### With Observability (Metrics & Logging)
```python
from brokerlink import Client, default_json_handler

client = await Client.connect("localhost:55555", log_handler=default_json_handler)
await client.get_value("Vehicle.Speed")

metrics = client.metrics.snapshot()
print(f"Avg latency: {metrics.latency_avg_ms}ms")
print(f"Dropped updates: {metrics.notifications_dropped}")
```

## Exports

- Client / SyncClient: connect, get_value, set_value, subscribe_value
- View, Metadata, EntryType: target values and signal descriptions
- Stream / SyncStream: typed sequences of signal updates
- Value, ValueType, Kind: tagged signal values and static conversion targets
- ClientConfig, ReconnectPolicy: timeouts, queue capacity, reconnect schedule
- BrokerLinkError and subclasses: the error taxonomy
- Metrics: Metrics collection for observability
- StructuredLogger: Structured logging with correlation IDs
"""

from .core.client import Client
from .core.sync_wrapper import SyncClient, SyncStream
from .core.stream import Stream
from .core.value import Kind, Value, ValueType
from .core.config import ClientConfig, ReconnectMode, ReconnectPolicy
from .core.connection import ConnectionState
from .core.message import BrokerMessage, MessageType, View
from .core.metadata import EntryType, Metadata
from .core.codec import Codec, MsgpackCodec
from .core.transport import Transport, ZmqTransport
from .core.errors import (
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
    TransportError,
    TypeMismatch,
)
from .core.metrics import Metrics, MetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__version__ = "1.0.0"
__all__ = [
    # Core
    "Client",
    "SyncClient",
    "Stream",
    "SyncStream",
    "Kind",
    "Value",
    "ValueType",
    "ClientConfig",
    "ReconnectMode",
    "ReconnectPolicy",
    "ConnectionState",
    "BrokerMessage",
    "MessageType",
    "View",
    "EntryType",
    "Metadata",
    "Codec",
    "MsgpackCodec",
    "Transport",
    "ZmqTransport",
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
