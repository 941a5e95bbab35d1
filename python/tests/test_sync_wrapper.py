"""
Tests for SyncWrapper, SyncClient and SyncStream.

Tests cover:
- Background event loop lifecycle
- Blocking get/set calls and error propagation
- Blocking stream iteration, timeouts and cancellation
- Context manager usage
"""

import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from broker_fakes import FakeBroker, fast_config
from brokerlink.core.errors import ConnectError, RemoteError, Timeout, TypeMismatch
from brokerlink.core.message import MessageType, View
from brokerlink.core.metadata import Metadata
from brokerlink.core.sync_wrapper import SyncClient, SyncStream, SyncWrapper
from brokerlink.core.value import ValueType


def make_client(broker, **config):
    return SyncClient("localhost:55555", fast_config(**config), transport_factory=broker.transport_factory)


def publish(client: SyncClient, broker: FakeBroker, path, value):
    """FakeBroker is not thread-safe; publish from the client's loop thread."""
    client._wrapper._loop.call_soon_threadsafe(broker.publish, path, value)


class TestSyncWrapper:
    """Test the background loop runner."""

    def test_init(self):
        wrapper = SyncWrapper()
        assert wrapper._loop is None
        assert wrapper._loop_thread is None
        assert not wrapper.running

    def test_run(self):
        wrapper = SyncWrapper()
        wrapper.ensure_loop()
        assert wrapper._loop.is_running()

        async def add(a, b):
            await asyncio.sleep(0.01)
            return a + b

        assert wrapper.run(add(5, 3)) == 8
        wrapper.stop()
        assert wrapper._loop is None
        assert wrapper._loop_thread is None

    def test_run_propagates_errors(self):
        wrapper = SyncWrapper()
        wrapper.ensure_loop()

        async def fail():
            raise ValueError("Intentional error")

        with pytest.raises(ValueError, match="Intentional error"):
            wrapper.run(fail())
        wrapper.stop()

    def test_run_without_loop_raises(self):
        wrapper = SyncWrapper()

        async def noop():
            return None

        with pytest.raises(RuntimeError, match="Event loop is not running"):
            wrapper.run(noop())

    def test_restart(self):
        wrapper = SyncWrapper()
        wrapper.ensure_loop()
        wrapper.stop()
        wrapper.ensure_loop()
        assert wrapper.running
        wrapper.stop()


class TestSyncClient:
    """Test the blocking client."""

    def test_get_and_set(self):
        broker = FakeBroker({"Vehicle.Speed": 42.0})
        with make_client(broker) as client:
            assert client.is_connected
            assert client.get_value("Vehicle.Speed", ValueType.FLOAT32) == 42.0

            client.set_value("Vehicle.Speed", 10.5, ValueType.FLOAT32)
            assert client.get_value("Vehicle.Speed") == 10.5
            assert len(broker.requests_of(MessageType.SET)) == 1

    def test_errors_propagate(self):
        broker = FakeBroker({"Vehicle.Speed": "fast"})
        with make_client(broker) as client:
            with pytest.raises(TypeMismatch):
                client.get_value("Vehicle.Speed", float)
            with pytest.raises(RemoteError):
                client.get_value("No.Such.Signal")

    def test_bulk_calls(self):
        broker = FakeBroker({"A": 1, "B": 2})
        with make_client(broker) as client:
            client.set_values({"A": 10, "B": 20})
            assert client.get_values(["A", "B"]) == {"A": 10, "B": 20}

    def test_target_view_and_metadata(self):
        broker = FakeBroker({"Vehicle.Gear": 1})
        with make_client(broker) as client:
            client.set_value("Vehicle.Gear", 3, ValueType.INT32, view=View.TARGET)
            assert client.get_value("Vehicle.Gear", int, view="target") == 3
            assert client.get_value("Vehicle.Gear", int) == 1

            client.set_metadata({"Vehicle.Gear": Metadata(unit="gear")})
            assert client.get_metadata(["Vehicle.Gear"]) == {"Vehicle.Gear": Metadata(unit="gear")}

    def test_connect_failure_stops_loop(self):
        broker = FakeBroker()
        broker.reachable = False
        client = make_client(broker)

        with pytest.raises(ConnectError):
            client.start()
        assert not client._wrapper.running

    def test_close_stops_loop(self):
        broker = FakeBroker()
        client = make_client(broker)
        client.start()
        client.close()

        assert client.client.closed
        assert not client._wrapper.running
        client.close()


class TestSyncStream:
    """Test blocking iteration over a subscription."""

    def test_iterate(self):
        broker = FakeBroker({"Vehicle.Speed": 0.0})
        with make_client(broker) as client:
            stream = client.subscribe_value("Vehicle.Speed", float)
            assert isinstance(stream, SyncStream)
            assert stream.path == "Vehicle.Speed"

            for speed in (1.0, 2.0):
                publish(client, broker, "Vehicle.Speed", speed)

            received = []
            for speed in stream:
                received.append(speed)
                if len(received) == 2:
                    break
            assert received == [1.0, 2.0]

    def test_next_timeout(self):
        broker = FakeBroker({"Vehicle.Speed": 0.0})
        with make_client(broker) as client:
            stream = client.subscribe_value("Vehicle.Speed")
            with pytest.raises(Timeout):
                stream.next(timeout=0.05)

            publish(client, broker, "Vehicle.Speed", 3.0)
            assert stream.next(timeout=1.0) == 3.0

    def test_cancel_ends_iteration(self):
        broker = FakeBroker({"Vehicle.Speed": 0.0})
        with make_client(broker) as client:
            with client.subscribe_value("Vehicle.Speed") as stream:
                pass
            assert stream.closed
            assert list(stream) == []
            assert len(broker.requests_of(MessageType.UNSUBSCRIBE)) == 1

    def test_metadata_stream(self):
        broker = FakeBroker({"Vehicle.Speed": 0.0})
        with make_client(broker) as client:
            stream = client.subscribe_metadata("Vehicle.Speed")
            client._wrapper._loop.call_soon_threadsafe(
                broker.publish_metadata, "Vehicle.Speed", Metadata(unit="km/h")
            )
            assert stream.next(timeout=1.0) == Metadata(unit="km/h")
