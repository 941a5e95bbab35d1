#!/usr/bin/env python3
"""
Stub signal broker over ZeroMQ.

Speaks the brokerlink protocol on a ROUTER socket: stores current values,
targets and metadata, answers get/set, and pushes notifications to
subscribers of each view. Used by the e2e tests and
the examples; run it standalone with:

    python e2e/stub_broker.py [port]
"""

import asyncio
import os
import sys
from collections import defaultdict
from typing import Any, Dict, Optional, Tuple

import zmq
import zmq.asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python", "src"))

from brokerlink.core.codec import MsgpackCodec
from brokerlink.core.errors import DecodeError, RemoteError
from brokerlink.core.message import BrokerMessage, MessageType, View
from brokerlink.core.metadata import EntryType, Metadata
from brokerlink.core.value import Value, ValueType


DEFAULT_SIGNALS = {
    "Vehicle.Speed": Value.of(0.0, ValueType.FLOAT32),
    "Vehicle.Gear": Value.of(1, ValueType.INT32),
    "Vehicle.VIN": Value.of("WVWZZZ1JZXW000001", ValueType.STRING),
    "Cabin.Temperature": Value.of(21.5, ValueType.FLOAT64),
    "Cabin.Seat.Occupied": Value.of([True, False], ValueType.BOOL_ARRAY),
}

READ_ONLY = {"Vehicle.VIN"}

DEFAULT_METADATA = {
    "Vehicle.Speed": Metadata(
        data_type=ValueType.FLOAT32, entry_type=EntryType.SENSOR, unit="km/h", min=0, max=250
    ),
    "Vehicle.Gear": Metadata(
        data_type=ValueType.INT32, entry_type=EntryType.ACTUATOR, min=-1, max=6
    ),
    "Vehicle.VIN": Metadata(data_type=ValueType.STRING, entry_type=EntryType.ATTRIBUTE),
}


class StubBroker:
    """
    In-process broker on a ROUTER socket (supports multiple clients).

    Usage:
        broker = StubBroker()
        await broker.start()
        client = await Client.connect(broker.address)
        ...
        await broker.publish("Vehicle.Speed", Value.of(50.0, ValueType.FLOAT32))
        await broker.stop()
    """

    def __init__(
        self,
        values: Optional[Dict[str, Value]] = None,
        port: Optional[int] = None,
        read_only=READ_ONLY,
    ):
        self.values: Dict[str, Value] = dict(DEFAULT_SIGNALS if values is None else values)
        self.targets: Dict[str, Value] = {}
        self.metadata: Dict[str, Metadata] = dict(DEFAULT_METADATA)
        self.read_only = set(read_only)
        self.port = port
        self.codec = MsgpackCodec()

        self.context: Optional[zmq.asyncio.Context] = None
        self.socket: Optional[zmq.asyncio.Socket] = None
        self._task: Optional[asyncio.Task] = None

        # token -> (sender_id, path, view)
        self.subscriptions: Dict[str, Tuple[bytes, str, View]] = {}
        self._seq: Dict[str, int] = defaultdict(int)

    @property
    def address(self) -> str:
        return f"tcp://127.0.0.1:{self.port}"

    async def start(self):
        """Bind the ROUTER socket and start serving."""
        self.context = zmq.asyncio.Context()
        self.socket = self.context.socket(zmq.ROUTER)
        self.socket.setsockopt(zmq.LINGER, 0)
        if self.port is None:
            self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        else:
            self.socket.bind(f"tcp://127.0.0.1:{self.port}")
        self._task = asyncio.create_task(self._serve())

    async def stop(self):
        """Stop serving; every client session is forgotten."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.socket is not None:
            self.socket.close(linger=0)
            self.socket = None
        if self.context is not None:
            self.context.term()
            self.context = None
        self.subscriptions.clear()

    async def _serve(self):
        while True:
            # ROUTER socket receives: [sender_id, empty_frame, message_data]
            frames = await self.socket.recv_multipart()
            if len(frames) < 3:
                continue
            sender_id, message_data = frames[0], frames[2]
            try:
                message = self.codec.decode(message_data)
            except DecodeError as e:
                print(f"ERROR: Failed to decode request: {e}", file=sys.stderr)
                continue
            await self._handle(sender_id, message)

    async def _handle(self, sender_id: bytes, message: BrokerMessage):
        msg_type = message.type
        if msg_type in (MessageType.HELLO, MessageType.PING):
            await self._send(sender_id, BrokerMessage.create_ack(message.id))
        elif msg_type is MessageType.GET:
            if message.path not in self.values:
                await self._send(sender_id, self._unknown(message))
            elif message.addressed_view is View.METADATA:
                metadata = self.metadata.get(message.path, Metadata())
                await self._send(
                    sender_id, BrokerMessage.create_response(None, message.id, metadata=metadata)
                )
            else:
                store = self.targets if message.addressed_view is View.TARGET else self.values
                value = store.get(message.path, Value.unset())
                await self._send(sender_id, BrokerMessage.create_response(value, message.id))
        elif msg_type is MessageType.SET:
            if message.path in self.read_only:
                await self._send(
                    sender_id,
                    BrokerMessage.create_error(
                        RemoteError.ACCESS_DENIED, f"{message.path} is read-only", message.id
                    ),
                )
                return
            view = message.addressed_view
            if view is View.METADATA:
                self.metadata[message.path] = message.metadata
            elif view is View.TARGET:
                self.targets[message.path] = message.value
            else:
                self.values[message.path] = message.value
            await self._send(sender_id, BrokerMessage.create_ack(message.id))
            await self._fan_out(message.path, view, message.value, message.metadata)
        elif msg_type is MessageType.SUBSCRIBE:
            if message.path not in self.values:
                await self._send(sender_id, self._unknown(message))
                return
            self.subscriptions[message.id] = (sender_id, message.path, message.addressed_view)
            await self._send(sender_id, BrokerMessage.create_ack(message.id))
        elif msg_type is MessageType.UNSUBSCRIBE:
            self.subscriptions.pop(message.ref, None)
            await self._send(sender_id, BrokerMessage.create_ack(message.id))

    def _unknown(self, message: BrokerMessage) -> BrokerMessage:
        return BrokerMessage.create_error(
            RemoteError.UNKNOWN_PATH, f"No signal named {message.path}", message.id
        )

    async def _send(self, sender_id: bytes, message: BrokerMessage):
        # Send response with ROUTER envelope: [sender_id, empty_frame, response_data]
        await self.socket.send_multipart([sender_id, b"", self.codec.encode(message)])

    async def _fan_out(
        self,
        path: str,
        view: View,
        value: Optional[Value],
        metadata: Optional[Metadata] = None,
    ):
        for token, (sender_id, sub_path, sub_view) in list(self.subscriptions.items()):
            if sub_path != path or sub_view is not view:
                continue
            self._seq[token] += 1
            notification = BrokerMessage.create_notification(
                path, value, token, self._seq[token], view=view, metadata=metadata
            )
            await self._send(sender_id, notification)

    async def publish(self, path: str, value: Any):
        """Update a signal as if a provider wrote it."""
        value = value if isinstance(value, Value) else Value.infer(value)
        self.values[path] = value
        await self._fan_out(path, View.CURRENT, value)


async def main(port: int):
    broker = StubBroker(port=port)
    await broker.start()
    print(f"Stub broker ready on {broker.address}")

    # Simulate a moving vehicle
    speed = 0.0
    while True:
        await asyncio.sleep(0.5)
        speed = (speed + 2.5) % 130
        await broker.publish("Vehicle.Speed", Value.of(speed, ValueType.FLOAT32))


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 55555
    try:
        asyncio.run(main(port))
    except KeyboardInterrupt:
        pass
