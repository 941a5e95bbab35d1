"""
In-memory broker and transport for unit tests.

FakeBroker answers requests synchronously from inside FakeTransport.send(),
so a test controls exactly when replies and notifications reach the client.
"""

import asyncio
import os
import sys
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from brokerlink.core.codec import MsgpackCodec
from brokerlink.core.config import ClientConfig, ReconnectPolicy
from brokerlink.core.errors import ConnectError, TransportClosed, TransportError
from brokerlink.core.message import BrokerMessage, MessageType, View
from brokerlink.core.metadata import Metadata
from brokerlink.core.transport import Transport
from brokerlink.core.value import Value


class FakeTransport(Transport):
    """Transport whose far end is a FakeBroker."""

    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False
        self.sent = 0

        # Tracks overlapping writes
        self.send_delay = 0.0
        self.active_sends = 0
        self.max_active_sends = 0

    async def open(self, address: str) -> None:
        if not self.broker.reachable:
            raise ConnectError(f"Broker at {address} is unreachable")
        self.opened = True
        self.broker.attach(self)

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportClosed("Transport is closed")
        if self.broker.fail_sends:
            raise TransportError("Send failed")

        self.active_sends += 1
        self.max_active_sends = max(self.max_active_sends, self.active_sends)
        try:
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            self.sent += 1
            self.broker.handle(self, data)
        finally:
            self.active_sends -= 1

    async def receive(self) -> bytes:
        if self.closed:
            raise TransportClosed("Transport is closed")
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(TransportClosed("Transport is closed"))
        self.broker.detach(self)

    def deliver(self, data: bytes):
        if not self.closed:
            self.inbox.put_nowait(data)

    def fail(self, error: BaseException):
        self.inbox.put_nowait(error)


class FakeBroker:
    """
    Minimal broker: value, target and metadata stores plus token-tagged
    notifications.

    Knobs:
    - reachable: False makes transport.open() raise ConnectError
    - answer_hello / reject_hello: handshake behaviour
    - answer_pings: False lets heartbeats go unanswered
    - held_paths: get/set/subscribe for these paths get no reply until release()
    - reject_subscribe: paths whose subscribe is refused with unknown_path
    - read_only: paths whose set is refused with access_denied
    - notify_on_subscribe: send the current value before acknowledging a subscribe
    - fail_sends: client writes raise TransportError
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.codec = MsgpackCodec()
        self.values: Dict[str, Value] = {}
        for path, value in (values or {}).items():
            self.values[path] = value if isinstance(value, Value) else Value.infer(value)
        self.targets: Dict[str, Value] = {}
        self.metadata: Dict[str, Metadata] = {}

        self.reachable = True
        self.answer_hello = True
        self.reject_hello = False
        self.answer_pings = True
        self.held_paths: Set[str] = set()
        self.reject_subscribe: Set[str] = set()
        self.read_only: Set[str] = set()
        self.notify_on_subscribe = False
        self.fail_sends = False

        self.transport: Optional[FakeTransport] = None
        self.transports: List[FakeTransport] = []
        self.requests: List[BrokerMessage] = []
        self.subscriptions: Dict[str, str] = {}
        self.subscription_views: Dict[str, View] = {}
        self._seq: Dict[str, int] = defaultdict(int)
        self._held: List[tuple] = []

    # Wiring

    def transport_factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def attach(self, transport: FakeTransport):
        self.transport = transport

    def detach(self, transport: FakeTransport):
        if self.transport is transport:
            self.transport = None
            self.subscriptions.clear()
            self.subscription_views.clear()

    # Inspection

    def requests_of(self, msg_type: MessageType) -> List[BrokerMessage]:
        return [msg for msg in self.requests if msg.type is msg_type]

    def subscribers(self, path: str, view: View = View.CURRENT) -> List[str]:
        return [
            token
            for token, sub_path in self.subscriptions.items()
            if sub_path == path and self.subscription_views[token] is view
        ]

    # Broker behaviour

    def handle(self, transport: FakeTransport, data: bytes):
        msg = self.codec.decode(data)
        self.requests.append(msg)

        if msg.path in self.held_paths:
            self._held.append((transport, msg))
            return
        self._answer(transport, msg)

    def _answer(self, transport: FakeTransport, msg: BrokerMessage):
        if msg.type is MessageType.HELLO:
            if self.reject_hello:
                self._reply(transport, BrokerMessage.create_error("access_denied", "go away", msg.id))
            elif self.answer_hello:
                self._reply(transport, BrokerMessage.create_ack(msg.id))
        elif msg.type is MessageType.PING:
            if self.answer_pings:
                self._reply(transport, BrokerMessage.create_ack(msg.id))
        elif msg.type is MessageType.GET:
            if msg.path not in self.values:
                self._reply(transport, self._unknown(msg))
            elif msg.addressed_view is View.METADATA:
                meta = self.metadata.get(msg.path, Metadata())
                self._reply(transport, BrokerMessage.create_response(None, msg.id, metadata=meta))
            elif msg.addressed_view is View.TARGET:
                target = self.targets.get(msg.path, Value.unset())
                self._reply(transport, BrokerMessage.create_response(target, msg.id))
            else:
                self._reply(transport, BrokerMessage.create_response(self.values[msg.path], msg.id))
        elif msg.type is MessageType.SET:
            if msg.path in self.read_only:
                self._reply(
                    transport,
                    BrokerMessage.create_error("access_denied", f"{msg.path} is read-only", msg.id),
                )
            else:
                self._store(msg.path, msg.addressed_view, msg.value, msg.metadata)
                self._reply(transport, BrokerMessage.create_ack(msg.id))
        elif msg.type is MessageType.SUBSCRIBE:
            if msg.path in self.reject_subscribe or msg.path not in self.values:
                self._reply(transport, self._unknown(msg))
                return
            self.subscriptions[msg.id] = msg.path
            self.subscription_views[msg.id] = msg.addressed_view
            if self.notify_on_subscribe:
                self._notify(transport, msg.id, msg.path, self.values[msg.path])
            self._reply(transport, BrokerMessage.create_ack(msg.id))
        elif msg.type is MessageType.UNSUBSCRIBE:
            self.subscriptions.pop(msg.ref, None)
            self.subscription_views.pop(msg.ref, None)
            self._reply(transport, BrokerMessage.create_ack(msg.id))

    def _unknown(self, msg: BrokerMessage) -> BrokerMessage:
        return BrokerMessage.create_error("unknown_path", f"No signal named {msg.path}", msg.id)

    def _reply(self, transport: FakeTransport, reply: BrokerMessage):
        transport.deliver(self.codec.encode(reply))

    def _store(self, path: str, view: View, value: Optional[Value], metadata: Optional[Metadata]):
        if view is View.METADATA:
            self.metadata[path] = metadata
        elif view is View.TARGET:
            self.targets[path] = value
        else:
            self.values[path] = value

    def _notify(
        self,
        transport: FakeTransport,
        token: str,
        path: str,
        value: Optional[Value],
        metadata: Optional[Metadata] = None,
    ):
        self._seq[token] += 1
        notification = BrokerMessage.create_notification(
            path, value, token, self._seq[token], metadata=metadata
        )
        transport.deliver(self.codec.encode(notification))

    def release(self, path: Optional[str] = None, reverse: bool = False):
        """Answer held requests (all, or those for one path)."""
        ready = [item for item in self._held if path is None or item[1].path == path]
        self._held = [item for item in self._held if item not in ready]
        if reverse:
            ready.reverse()
        for transport, msg in ready:
            self._answer(transport, msg)

    def publish(self, path: str, value: Any, view: View = View.CURRENT):
        """Store a value and notify every subscriber of its path in that view."""
        value = value if isinstance(value, Value) else Value.infer(value)
        self._store(path, view, value, None)
        if self.transport is None:
            return
        for token in self.subscribers(path, view):
            self._notify(self.transport, token, path, value)

    def publish_metadata(self, path: str, metadata: Metadata):
        self.metadata[path] = metadata
        if self.transport is None:
            return
        for token in self.subscribers(path, View.METADATA):
            self._notify(self.transport, token, path, None, metadata)

    def send_raw(self, data: bytes):
        self.transport.deliver(data)

    def drop(self):
        """Break the link from the broker side; the session's subscriptions are gone."""
        transport = self.transport
        self.transport = None
        self.subscriptions.clear()
        self.subscription_views.clear()
        self._held.clear()
        if transport is not None:
            transport.fail(TransportError("Link dropped by broker"))


def fast_config(**overrides) -> ClientConfig:
    """Config with short timeouts, no heartbeats and quick reconnects."""
    settings = dict(
        connect_timeout=0.5,
        default_timeout=1.0,
        heartbeat_interval=0,
        reconnect=ReconnectPolicy.fixed(0.01, max_attempts=5),
    )
    settings.update(overrides)
    return ClientConfig(**settings)


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll predicate until it is true; fail the test after timeout seconds."""

    async def poll():
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(poll(), timeout)
