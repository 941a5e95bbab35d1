"""
Tests for the subscription multiplexer: registration, routing, ordering,
cancellation and resubscription.
"""

import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from broker_fakes import FakeBroker, fast_config, wait_until
from brokerlink.core.connection import Connection
from brokerlink.core.errors import ConnectionLost, ReconnectFailed, SubscribeError
from brokerlink.core.message import BrokerMessage, MessageType, View
from brokerlink.core.metadata import Metadata
from brokerlink.core.metrics import Metrics
from brokerlink.core.multiplexer import Multiplexer
from brokerlink.core.value import Value


async def setup(values=None, capacity=8):
    broker = FakeBroker(values or {"Vehicle.Speed": 0.0, "Cabin.Temp": 20.0})
    metrics = Metrics()
    connection = Connection(
        "localhost:55555",
        transport_factory=broker.transport_factory,
        config=fast_config(),
        metrics=metrics,
    )
    multiplexer = Multiplexer(connection, queue_capacity=capacity, request_timeout=1.0, metrics=metrics)
    connection.on_notification = multiplexer.dispatch
    await connection.connect()
    return broker, connection, multiplexer


async def read(entry, n):
    return [(await asyncio.wait_for(entry.queue.get(), 1.0)).data for _ in range(n)]


class TestRegister:
    async def test_register(self):
        broker, connection, mux = await setup()

        entry = await mux.register("Vehicle.Speed")
        assert entry.id in mux
        assert entry.live
        assert broker.subscriptions == {entry.token: "Vehicle.Speed"}
        assert mux._metrics.snapshot().subscriptions_active == 1
        await connection.close()

    async def test_ids_are_never_reused(self):
        broker, connection, mux = await setup()

        first = await mux.register("Vehicle.Speed")
        await mux.cancel(first.id)
        second = await mux.register("Vehicle.Speed")
        assert second.id > first.id
        await connection.close()

    async def test_rejected(self):
        broker, connection, mux = await setup()

        with pytest.raises(SubscribeError) as exc_info:
            await mux.register("No.Such.Signal")
        assert exc_info.value.path == "No.Such.Signal"
        assert len(mux) == 0
        assert mux._tokens == {}
        await connection.close()

    async def test_not_connected(self):
        broker, connection, mux = await setup()
        await connection.close()

        with pytest.raises(SubscribeError):
            await mux.register("Vehicle.Speed")
        assert len(mux) == 0

    async def test_notification_before_ack(self):
        broker, connection, mux = await setup()
        broker.notify_on_subscribe = True

        entry = await mux.register("Vehicle.Speed")
        assert await read(entry, 1) == [0.0]
        await connection.close()


class TestDispatch:
    async def test_in_order(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")

        for speed in (1.0, 2.0, 3.0):
            broker.publish("Vehicle.Speed", speed)
        assert await read(entry, 3) == [1.0, 2.0, 3.0]
        await connection.close()

    async def test_two_subscribers_each_get_every_update_once(self):
        broker, connection, mux = await setup()
        fast = await mux.register("Vehicle.Speed")
        slow = await mux.register("Vehicle.Speed")

        for speed in (1.0, 2.0, 3.0):
            broker.publish("Vehicle.Speed", speed)

        assert await read(fast, 3) == [1.0, 2.0, 3.0]
        broker.publish("Vehicle.Speed", 4.0)
        assert await read(fast, 1) == [4.0]
        assert await read(slow, 4) == [1.0, 2.0, 3.0, 4.0]
        assert len(fast.queue) == 0 and len(slow.queue) == 0
        await connection.close()

    async def test_paths_are_independent(self):
        broker, connection, mux = await setup()
        speed = await mux.register("Vehicle.Speed")
        temp = await mux.register("Cabin.Temp")

        broker.publish("Cabin.Temp", 22.5)
        assert await read(temp, 1) == [22.5]
        assert len(speed.queue) == 0
        await connection.close()

    async def test_fan_out_without_token(self):
        broker, connection, mux = await setup()
        a = await mux.register("Vehicle.Speed")
        b = await mux.register("Vehicle.Speed")

        mux.dispatch(BrokerMessage.create_notification("Vehicle.Speed", Value.infer(9.0)))
        assert await read(a, 1) == [9.0]
        assert await read(b, 1) == [9.0]
        await connection.close()

    async def test_unknown_token_dropped(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")

        mux.dispatch(
            BrokerMessage.create_notification("Vehicle.Speed", Value.infer(1.0), "stale", 1)
        )
        mux.dispatch(BrokerMessage.create_notification("Nobody.Listens", Value.infer(1.0)))
        assert len(entry.queue) == 0
        assert mux._metrics.snapshot().notifications_dropped == 2
        await connection.close()

    async def test_duplicate_seq_dropped(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")

        for seq, speed in ((1, 1.0), (2, 2.0), (2, 2.0), (1, 1.0), (3, 3.0)):
            mux.dispatch(
                BrokerMessage.create_notification(
                    "Vehicle.Speed", Value.infer(speed), entry.token, seq
                )
            )
        assert await read(entry, 3) == [1.0, 2.0, 3.0]
        assert len(entry.queue) == 0
        await connection.close()

    async def test_overflow_does_not_block_others(self):
        broker, connection, mux = await setup(capacity=2)
        stuck = await mux.register("Vehicle.Speed")
        other = await mux.register("Vehicle.Speed")

        for speed in range(5):
            broker.publish("Vehicle.Speed", float(speed))
            await read(other, 1)

        assert len(stuck.queue) == 2
        snapshot = mux._metrics.snapshot()
        assert snapshot.queue_overflows == 3
        # Each overflowing put is one drop and no delivery
        assert snapshot.notifications_dropped == 3
        assert snapshot.notifications_delivered == 7
        await connection.close()

    async def test_fan_out_respects_view(self):
        broker, connection, mux = await setup()
        current = await mux.register("Vehicle.Speed")
        target = await mux.register("Vehicle.Speed", View.TARGET)

        mux.dispatch(BrokerMessage.create_notification("Vehicle.Speed", Value.infer(1.0)))
        mux.dispatch(
            BrokerMessage.create_notification("Vehicle.Speed", Value.infer(2.0), view=View.TARGET)
        )
        assert await read(current, 1) == [1.0]
        assert await read(target, 1) == [2.0]
        assert len(current.queue) == 0 and len(target.queue) == 0
        await connection.close()

    async def test_metadata_entry_gets_metadata(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed", View.METADATA)
        meta = Metadata(unit="km/h")

        # A value-only notification carries nothing for a metadata stream
        mux.dispatch(
            BrokerMessage.create_notification("Vehicle.Speed", Value.infer(1.0), entry.token, 1)
        )
        mux.dispatch(
            BrokerMessage.create_notification(
                "Vehicle.Speed", None, entry.token, 2, metadata=meta
            )
        )
        assert await asyncio.wait_for(entry.queue.get(), 1.0) == meta
        assert len(entry.queue) == 0
        await connection.close()


class TestCancel:
    async def test_cancel(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        token = entry.token

        await mux.cancel(entry.id)

        assert entry.id not in mux
        assert not entry.live
        assert entry.queue.closed
        unsubscribes = broker.requests_of(MessageType.UNSUBSCRIBE)
        assert len(unsubscribes) == 1
        assert unsubscribes[0].ref == token
        assert broker.subscriptions == {}
        await connection.close()

    async def test_nothing_delivered_after_cancel(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        token = entry.token

        mux.discard(entry.id)
        # The broker has not processed the unsubscribe yet
        mux.dispatch(
            BrokerMessage.create_notification("Vehicle.Speed", Value.infer(1.0), token, 1)
        )
        assert len(entry.queue) == 0
        with pytest.raises(StopAsyncIteration):
            await entry.queue.get()
        await connection.close()

    async def test_cancel_while_disconnected(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        await connection.close()

        await mux.cancel(entry.id)
        assert len(mux) == 0

    async def test_cancel_is_idempotent(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        await mux.cancel(entry.id)
        await mux.cancel(entry.id)
        assert len(broker.requests_of(MessageType.UNSUBSCRIBE)) == 1
        await connection.close()

    async def test_cancel_soon(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")

        mux.cancel_soon(entry.id)
        assert entry.id not in mux
        await wait_until(lambda: broker.requests_of(MessageType.UNSUBSCRIBE))
        await connection.close()


class TestConnectionLoss:
    async def test_without_reconnect_streams_end(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")

        mux.on_connection_lost(will_reconnect=False)
        with pytest.raises(ConnectionLost):
            await entry.queue.get()
        with pytest.raises(StopAsyncIteration):
            await entry.queue.get()
        assert len(mux) == 0
        await connection.close()

    async def test_with_reconnect_streams_pause(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        old_token = entry.token

        mux.on_connection_lost(will_reconnect=True)
        assert entry.queue.paused
        assert entry.token is None
        assert entry.id in mux

        # Old-session notifications are dropped
        mux.dispatch(
            BrokerMessage.create_notification("Vehicle.Speed", Value.infer(1.0), old_token, 5)
        )
        assert len(entry.queue) == 0
        await connection.close()

    async def test_resubscribe(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed")
        old_token = entry.token

        broker.drop()
        await wait_until(lambda: not connection.is_connected)
        mux.on_connection_lost(will_reconnect=True)
        await connection.connect()
        await mux.on_reconnect()

        assert entry.id in mux
        assert entry.token is not None and entry.token != old_token
        assert not entry.queue.paused
        assert broker.subscribers("Vehicle.Speed") == [entry.token]

        broker.publish("Vehicle.Speed", 7.0)
        assert await read(entry, 1) == [7.0]
        await connection.close()

    async def test_resubscribe_keeps_view(self):
        broker, connection, mux = await setup()
        entry = await mux.register("Vehicle.Speed", View.TARGET)

        broker.drop()
        await wait_until(lambda: not connection.is_connected)
        mux.on_connection_lost(will_reconnect=True)
        await connection.connect()
        await mux.on_reconnect()

        assert broker.subscribers("Vehicle.Speed", View.TARGET) == [entry.token]
        assert broker.requests_of(MessageType.SUBSCRIBE)[-1].view is View.TARGET
        await connection.close()

    async def test_resubscribe_rejected(self):
        broker, connection, mux = await setup()
        doomed = await mux.register("Vehicle.Speed")
        fine = await mux.register("Cabin.Temp")

        broker.drop()
        await wait_until(lambda: not connection.is_connected)
        mux.on_connection_lost(will_reconnect=True)
        broker.reject_subscribe.add("Vehicle.Speed")
        await connection.connect()
        await mux.on_reconnect()

        with pytest.raises(ReconnectFailed):
            await doomed.queue.get()
        with pytest.raises(StopAsyncIteration):
            await doomed.queue.get()
        assert doomed.id not in mux

        broker.publish("Cabin.Temp", 19.0)
        assert await read(fine, 1) == [19.0]
        await connection.close()

    async def test_fail_all(self):
        broker, connection, mux = await setup()
        a = await mux.register("Vehicle.Speed")
        b = await mux.register("Cabin.Temp")

        mux.fail_all(ConnectionLost("gone"))
        for entry in (a, b):
            with pytest.raises(ConnectionLost):
                await entry.queue.get()
        assert len(mux) == 0
        assert mux._metrics.snapshot().subscriptions_active == 0
        await connection.close()
