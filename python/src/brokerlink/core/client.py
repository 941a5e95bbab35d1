"""
Typed client facade: get, set and subscribe to broker signals.
"""

import asyncio
import uuid
import weakref
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .codec import Codec
from .config import ClientConfig
from .connection import Connection, ConnectionState
from .errors import ClientClosed, ConnectError, DecodeError
from .logging import LogEvent, LogHandler, StructuredLogger
from .message import BrokerMessage, View
from .metadata import Metadata
from .metrics import Metrics
from .multiplexer import Multiplexer
from .stream import Stream
from .transport import Transport, ZmqTransport
from .value import Value, ValueType

StateListener = Callable[[ConnectionState], None]
TypeSpec = Union[ValueType, type, str, None]
ViewSpec = Union[View, str]

# Teardowns scheduled for clients dropped without close()
_orphan_closes = set()


def _check_path(path: str) -> str:
    if not isinstance(path, str) or not path:
        raise ValueError(f"Signal path must be a non-empty string, got {path!r}")
    return path


def _resolve(value_type: TypeSpec) -> Optional[ValueType]:
    return ValueType.resolve(value_type) if value_type is not None else None


def _value_view(view: ViewSpec) -> View:
    """CURRENT or TARGET; metadata has its own calls."""
    view = View(view) if isinstance(view, str) else view
    if view not in (View.CURRENT, View.TARGET):
        raise ValueError(f"Expected a current or target view, got {view!r}")
    return view


def _weak_callback(method):
    """Wrap a bound method so the caller does not keep its owner alive."""
    ref = weakref.WeakMethod(method)

    def callback(*args):
        target = ref()
        if target is not None:
            target(*args)

    return callback


def _close_orphan(connection: Connection, multiplexer: Multiplexer):
    multiplexer.close_all()
    task = asyncio.ensure_future(connection.close())
    _orphan_closes.add(task)
    task.add_done_callback(_orphan_closes.discard)


class Client:
    """
    Client for one broker.

    Owns exactly one Connection and one Multiplexer. Closing the client, or
    dropping a started one, tears down the connection and ends every stream.

    Features:
    - Typed reads: values are converted to the requested ValueType (or
      returned in their natural Python form when no type is given)
    - Live subscriptions multiplexed over the single connection
    - Current and target views of a signal, plus its metadata
    - Transparent reconnect per ReconnectPolicy; streams survive it
    - Metrics: request latency, delivery and reconnect counters
    - Structured logging through a pluggable handler
    """

    def __init__(
        self,
        address: str,
        config: Optional[ClientConfig] = None,
        transport_factory: Callable[[], Transport] = ZmqTransport,
        codec: Optional[Codec] = None,
        log_handler: Optional[LogHandler] = None,
        enable_metrics: bool = True,
    ):
        self.address = address
        self.config = config or ClientConfig()
        self._client_id = str(uuid.uuid4())[:8]

        self._metrics = Metrics() if enable_metrics else None
        self._logger = StructuredLogger(
            handler=log_handler,
            client_id=self._client_id,
            address=address,
        )

        self._connection = Connection(
            address,
            transport_factory=transport_factory,
            codec=codec,
            config=self.config,
            logger=self._logger,
            metrics=self._metrics,
            on_lost=_weak_callback(self._on_connection_lost),
        )
        self._multiplexer = Multiplexer(
            self._connection,
            queue_capacity=self.config.queue_capacity,
            request_timeout=self.config.default_timeout,
            logger=self._logger,
            metrics=self._metrics,
        )
        self._connection.on_notification = self._multiplexer.dispatch

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._state_listeners: List[StateListener] = []
        self._reported_state = ConnectionState.DISCONNECTED
        self._started = False
        self._closed = False

    @classmethod
    async def connect(
        cls, address: str, config: Optional[ClientConfig] = None, **kwargs
    ) -> "Client":
        """
        Create a client and connect it.

        Raises:
            ConnectError: the broker is unreachable or rejected the handshake
        """
        client = cls(address, config, **kwargs)
        await client.start()
        return client

    @property
    def metrics(self) -> Optional[Metrics]:
        """Get the metrics collector."""
        return self._metrics

    @property
    def logger(self) -> StructuredLogger:
        """Get the structured logger."""
        return self._logger

    def set_log_handler(self, handler: Optional[LogHandler]):
        """
        Set a custom log handler.

        Usage:
            client.set_log_handler(lambda entry: print(entry.to_json()))
        """
        self._logger.set_handler(handler)

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscription_count(self) -> int:
        return len(self._multiplexer)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Call listener with CONNECTED / DISCONNECTED on every transition.

        Returns:
            A function that removes the listener
        """
        self._state_listeners.append(listener)

        def remove():
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _notify_state(self, state: ConnectionState):
        if state is self._reported_state:
            return
        self._reported_state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                self._logger.error(
                    LogEvent.DISCONNECT if state is ConnectionState.DISCONNECTED else LogEvent.CONNECT,
                    f"State listener failed: {e}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def start(self):
        """
        Connect to the broker.

        Raises:
            ConnectError: the broker is unreachable or rejected the handshake
            ClientClosed: the client was already closed
        """
        self._check_open()
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        await self._connection.connect(self.config.connect_timeout)
        self._started = True
        self._logger.info(LogEvent.CLIENT_START, f"Client started for {self.address}")
        self._notify_state(ConnectionState.CONNECTED)

    def _check_open(self):
        if self._closed:
            raise ClientClosed("Client is closed")

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.config.default_timeout

    async def get_value(
        self,
        path: str,
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> Any:
        """
        Read the value of a signal.

        Args:
            path: Signal path, e.g. "Vehicle.Speed"
            value_type: Static type to convert to (None: natural Python value)
            timeout: Seconds to wait (default: config.default_timeout)
            view: View.CURRENT (the signal's value) or View.TARGET (the value
                an actuator was asked to reach)

        Returns:
            The converted value; None if the broker has no value for the path

        Raises:
            TypeMismatch / RangeError: the value does not convert to value_type
            RemoteError: the broker rejected the request (e.g. unknown path)
            Timeout: no reply in time
            ConnectionLost: not connected, or the link dropped mid-request
        """
        self._check_open()
        path = _check_path(path)
        target = _resolve(value_type)
        view = _value_view(view)

        reply = await self._connection.request(
            BrokerMessage.create_get(path, view=view), timeout=self._timeout(timeout)
        )
        value = reply.value if reply.value is not None else Value.unset()
        if target is None:
            return value.to_python()
        return value.as_type(target)

    async def set_value(
        self,
        path: str,
        value: Any,
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> None:
        """
        Write a signal value; returns once the broker has acknowledged it.

        Args:
            path: Signal path
            value: Python value or a ready-made Value
            value_type: Wire type to send as (None: inferred from the Python type)
            timeout: Seconds to wait for the acknowledgement
            view: View.TARGET asks an actuator to move; View.CURRENT writes
                the value itself (what a provider does)

        Raises:
            TypeMismatch / RangeError: value is not a member of value_type
            RemoteError, Timeout, ConnectionLost: as for get_value
        """
        self._check_open()
        path = _check_path(path)
        target = _resolve(value_type)
        view = _value_view(view)

        if isinstance(value, Value):
            wire_value = value
        elif target is not None:
            wire_value = Value.of(value, target)
        else:
            wire_value = Value.infer(value)

        await self._connection.request(
            BrokerMessage.create_set(path, wire_value, view=view),
            timeout=self._timeout(timeout),
        )

    async def subscribe_value(
        self,
        path: str,
        value_type: TypeSpec = None,
        view: ViewSpec = View.CURRENT,
    ) -> Stream:
        """
        Subscribe to live updates of a signal.

        Returns:
            A Stream yielding converted values as the broker publishes them

        Raises:
            SubscribeError: the broker rejected the path or the link failed
        """
        self._check_open()
        path = _check_path(path)
        target = _resolve(value_type)
        view = _value_view(view)

        entry = await self._multiplexer.register(path, view)
        return Stream(entry.id, path, entry.queue.reader(), self._multiplexer, target, view)

    async def unsubscribe(self, stream: Stream):
        """Cancel a stream (same as stream.cancel())."""
        await stream.cancel()

    async def get_values(
        self,
        paths: Iterable[str],
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> Dict[str, Any]:
        """Read several signals concurrently; the first failure is raised."""
        paths = [_check_path(path) for path in paths]
        results = await asyncio.gather(
            *(self.get_value(path, value_type, timeout, view) for path in paths)
        )
        return dict(zip(paths, results))

    async def set_values(
        self,
        values: Mapping[str, Any],
        value_type: TypeSpec = None,
        timeout: Optional[float] = None,
        view: ViewSpec = View.CURRENT,
    ) -> None:
        """Write several signals in order, stopping at the first failure."""
        for path, value in values.items():
            await self.set_value(path, value, value_type, timeout, view)

    async def get_metadata(
        self, paths: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, Metadata]:
        """
        Describe several signals: data type, entry type, unit and limits.

        Raises:
            RemoteError: a path is unknown to the broker
            DecodeError: the broker answered without metadata
        """
        self._check_open()
        paths = [_check_path(path) for path in paths]

        async def fetch(path: str) -> Metadata:
            reply = await self._connection.request(
                BrokerMessage.create_get(path, view=View.METADATA),
                timeout=self._timeout(timeout),
            )
            if reply.metadata is None:
                raise DecodeError(f"Metadata reply for '{path}' carries no metadata", reply.id)
            return reply.metadata

        results = await asyncio.gather(*(fetch(path) for path in paths))
        return dict(zip(paths, results))

    async def set_metadata(
        self, metadata: Mapping[str, Metadata], timeout: Optional[float] = None
    ) -> None:
        """Update signal descriptions in order, stopping at the first failure."""
        self._check_open()
        for path, entry in metadata.items():
            await self._connection.request(
                BrokerMessage.create_set(
                    _check_path(path), None, view=View.METADATA, metadata=entry
                ),
                timeout=self._timeout(timeout),
            )

    async def subscribe_metadata(self, path: str) -> Stream:
        """
        Subscribe to changes of a signal's description.

        Returns:
            A Stream yielding Metadata objects
        """
        self._check_open()
        path = _check_path(path)
        entry = await self._multiplexer.register(path, View.METADATA)
        return Stream(
            entry.id, path, entry.queue.reader(), self._multiplexer, view=View.METADATA
        )

    def _on_connection_lost(self, reason: BaseException):
        """Called by the Connection, from the event loop, when the link drops."""
        will_reconnect = self.config.reconnect.enabled and not self._closed
        self._multiplexer.on_connection_lost(will_reconnect)
        self._notify_state(ConnectionState.DISCONNECTED)

        if will_reconnect and (self._reconnect_task is None or self._reconnect_task.done()):
            self._reconnect_task = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self):
        """Reconnect per policy, then resubscribe every live stream."""
        policy = self.config.reconnect

        while not self._closed:
            attempt = 0
            for delay in policy.delays():
                attempt += 1
                self._logger.reconnect_attempt(attempt, policy.max_attempts, delay)
                await asyncio.sleep(delay)
                if self._closed:
                    return

                try:
                    await self._connection.connect(self.config.connect_timeout)
                except ConnectError as e:
                    if self._metrics:
                        self._metrics.record_reconnect_attempt(success=False)
                    self._logger.warn(
                        LogEvent.RECONNECT_ATTEMPT,
                        f"Reconnect attempt {attempt} failed: {e}",
                        error=str(e),
                    )
                    continue

                if self._metrics:
                    self._metrics.record_reconnect_attempt(success=True)
                self._logger.info(
                    LogEvent.RECONNECT_SUCCESS,
                    f"Reconnected after {attempt} attempt(s)",
                    metadata={"attempt": attempt},
                )
                self._notify_state(ConnectionState.CONNECTED)
                await self._multiplexer.on_reconnect()
                break
            else:
                error = ConnectError(
                    f"Gave up reconnecting to {self.address} after {attempt} attempt(s)"
                )
                self._logger.error(LogEvent.RECONNECT_FAILED, str(error), error=str(error))
                self._multiplexer.fail_all(error)
                return

            if self._connection.is_connected:
                return
            # Lost again while resubscribing: start the schedule over

    async def close(self):
        """Close the client: end all streams and drop the connection."""
        if self._closed:
            return
        self._closed = True
        self._logger.info(LogEvent.CLIENT_STOP, "Client stopped: shutdown")

        task = self._reconnect_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._multiplexer.close_all()
        await self._connection.close()
        self._notify_state(ConnectionState.DISCONNECTED)

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()

    def __del__(self):
        """Dropping a started client closes its connection and ends its streams."""
        if getattr(self, "_closed", True) or self._loop is None or self._loop.is_closed():
            return
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(_close_orphan, self._connection, self._multiplexer)
        except RuntimeError:
            # Loop closed between the check and the call
            pass
