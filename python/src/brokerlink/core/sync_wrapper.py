"""
Sync wrapper for the async Client.
Provides a blocking API on top of the async core.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .client import Client, StateListener, TypeSpec, ViewSpec
from .config import ClientConfig
from .connection import ConnectionState
from .errors import Timeout
from .message import View
from .metadata import Metadata
from .metrics import Metrics
from .stream import Stream

_END = object()


class SyncWrapper:
    """
    Runs coroutines on a private event loop in a background thread.

    Every object created through the wrapper (client, streams) lives on that
    loop, so the blocking API can be used from any thread.
    """

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_started = threading.Event()
        self._loop_stopped = threading.Event()

    @property
    def running(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def ensure_loop(self):
        """Ensure an event loop is running in a background thread."""
        if not self.running:
            self._start_loop()

    def _start_loop(self):
        self._loop_started.clear()
        self._loop_stopped.clear()

        def run_loop():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._loop_started.set()
            try:
                self._loop.run_forever()
            finally:
                self._loop.close()
                self._loop_stopped.set()

        self._loop_thread = threading.Thread(
            target=run_loop, name="brokerlink-loop", daemon=True
        )
        self._loop_thread.start()
        self._loop_started.wait()

    def stop(self):
        """Stop the background event loop."""
        if self.running:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_stopped.wait(timeout=2)
            if self._loop_thread is not None:
                self._loop_thread.join(timeout=2)
        self._loop = None
        self._loop_thread = None

    def run(self, coro) -> Any:
        """
        Run a coroutine on the background loop and wait for its result.

        Raises:
            RuntimeError: the loop is not running
        """
        if not self.running:
            coro.close()
            raise RuntimeError("Event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()


class SyncStream:
    """
    Blocking iterator over a Stream.

    Usage:
        for speed in client.subscribe_value("Vehicle.Speed", float):
            print(speed)
    """

    def __init__(self, stream: Stream, wrapper: SyncWrapper):
        self._stream = stream
        self._wrapper = wrapper

    @property
    def path(self) -> str:
        return self._stream.path

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def __iter__(self):
        return self

    def __next__(self) -> Any:
        value = self._wrapper.run(self._read(None))
        if value is _END:
            raise StopIteration
        return value

    def next(self, timeout: Optional[float] = None) -> Any:
        """
        Block for the next value.

        Raises:
            StopIteration: the stream has ended
            Timeout: nothing arrived within timeout seconds
        """
        value = self._wrapper.run(self._read(timeout))
        if value is _END:
            raise StopIteration
        return value

    async def _read(self, timeout: Optional[float]):
        try:
            return await asyncio.wait_for(self._stream.next(), timeout)
        except StopAsyncIteration:
            return _END
        except asyncio.TimeoutError:
            raise Timeout(f"No update for {self.path} within {timeout} seconds") from None

    def cancel(self):
        """Unsubscribe. Idempotent."""
        if self._wrapper.running:
            self._wrapper.run(self._stream.cancel())

    def __enter__(self) -> "SyncStream":
        return self

    def __exit__(self, exc_type, exc_val, tb):
        self.cancel()


class SyncClient:
    """
    Blocking client.

    Usage:
        with SyncClient("localhost:55555") as client:
            speed = client.get_value("Vehicle.Speed", ValueType.FLOAT32)
            client.set_value("Vehicle.Speed", 10.5, ValueType.FLOAT32)
    """

    def __init__(self, address: str, config: Optional[ClientConfig] = None, **client_kwargs):
        self._wrapper = SyncWrapper()
        self._client = Client(address, config, **client_kwargs)

    @property
    def client(self) -> Client:
        """The wrapped async client."""
        return self._client

    @property
    def address(self) -> str:
        return self._client.address

    @property
    def state(self) -> ConnectionState:
        return self._client.state

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    @property
    def metrics(self) -> Optional[Metrics]:
        return self._client.metrics

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Listeners are called on the client's background thread."""
        return self._client.add_state_listener(listener)

    def start(self):
        """Connect to the broker."""
        self._wrapper.ensure_loop()
        try:
            self._wrapper.run(self._client.start())
        except BaseException:
            self._wrapper.stop()
            raise

    def get_value(
        self,
        path: str,
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> Any:
        return self._wrapper.run(self._client.get_value(path, value_type, timeout, view))

    def set_value(
        self,
        path: str,
        value: Any,
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> None:
        self._wrapper.run(self._client.set_value(path, value, value_type, timeout, view))

    def get_values(
        self,
        paths: Iterable[str],
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> Dict[str, Any]:
        return self._wrapper.run(
            self._client.get_values(list(paths), value_type, timeout, view)
        )

    def set_values(
        self,
        values: Mapping[str, Any],
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> None:
        self._wrapper.run(self._client.set_values(values, value_type, timeout, view))

    def subscribe_value(
        self, path: str, value_type: TypeSpec = None, view: ViewSpec = View.CURRENT
    ) -> SyncStream:
        stream = self._wrapper.run(self._client.subscribe_value(path, value_type, view))
        return SyncStream(stream, self._wrapper)

    def get_metadata(
        self, paths: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, Metadata]:
        return self._wrapper.run(self._client.get_metadata(list(paths), timeout))

    def set_metadata(
        self, metadata: Mapping[str, Metadata], timeout: Optional[float] = None
    ) -> None:
        self._wrapper.run(self._client.set_metadata(metadata, timeout))

    def subscribe_metadata(self, path: str) -> SyncStream:
        stream = self._wrapper.run(self._client.subscribe_metadata(path))
        return SyncStream(stream, self._wrapper)

    def close(self):
        """Close the client and stop the background loop."""
        if self._wrapper.running:
            self._wrapper.run(self._client.close())
            self._wrapper.stop()

    def __enter__(self) -> "SyncClient":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, tb):
        self.close()

    def __del__(self):
        """Cleanup on deletion."""
        wrapper = getattr(self, "_wrapper", None)
        if wrapper is not None and wrapper.running:
            self.close()
