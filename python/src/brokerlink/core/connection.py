"""
One physical link to the broker.

The Connection owns the transport. A single read-loop task is the only reader;
it completes pending request futures and hands notifications to the owner.
Writers from any coroutine are serialized by a lock so payloads never
interleave. Losing the link fails every pending request with ConnectionLost
and reports the loss once; retrying is the owner's business.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, Dict, Optional, Set

from .codec import Codec, MsgpackCodec
from .config import ClientConfig
from .errors import (
    BrokerLinkError,
    ConnectError,
    ConnectTimeout,
    ConnectionLost,
    DecodeError,
    FramingError,
    RemoteError,
    Timeout,
    TransportClosed,
    TransportError,
)
from .logging import LogEvent, StructuredLogger
from .message import BrokerMessage, MessageType
from .metrics import Metrics
from .transport import Transport, ZmqTransport

NotificationHandler = Callable[[BrokerMessage], None]
LostHandler = Callable[[BaseException], None]


class ConnectionState(Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Connection:
    """
    Request/response and notification intake over one transport.

    Usage:
        connection = Connection("localhost:55555", on_notification=print)
        await connection.connect()
        reply = await connection.request(BrokerMessage.create_get("Vehicle.Speed"))
        await connection.close()
    """

    def __init__(
        self,
        address: str,
        transport_factory: Callable[[], Transport] = ZmqTransport,
        codec: Optional[Codec] = None,
        config: Optional[ClientConfig] = None,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
        on_notification: Optional[NotificationHandler] = None,
        on_lost: Optional[LostHandler] = None,
    ):
        self.address = address
        self.config = config or ClientConfig()
        self._transport_factory = transport_factory
        self._transport: Optional[Transport] = None
        self._codec = codec or MsgpackCodec()
        self._logger = logger or StructuredLogger()
        self._metrics = metrics
        self.on_notification = on_notification
        self.on_lost = on_lost

        self._state = ConnectionState.DISCONNECTED

        # Pending requests: request_id -> asyncio.Future
        self.pending_requests: Dict[str, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()

        self._read_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        # Heartbeat state
        self._consecutive_heartbeat_misses = 0
        self._last_heartbeat_rtt_ms: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_heartbeat_rtt_ms(self) -> Optional[float]:
        """Get the last heartbeat round-trip time in milliseconds."""
        return self._last_heartbeat_rtt_ms

    async def connect(self, timeout: Optional[float] = None):
        """
        Open the transport and complete the HELLO handshake.

        Raises:
            ConnectError: unreachable or rejected
            ConnectTimeout: no handshake reply in time (a ConnectError and a Timeout)
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise ConnectError(f"Connection is already {self._state.value}")

        effective_timeout = timeout if timeout is not None else self.config.connect_timeout
        self._state = ConnectionState.CONNECTING
        transport = self._transport_factory()

        try:
            await asyncio.wait_for(self._open_and_handshake(transport), effective_timeout)
        except asyncio.TimeoutError:
            await self._abort(transport)
            self._logger.warn(LogEvent.CONNECT_FAILED, "Handshake timed out")
            raise ConnectTimeout(
                f"No handshake reply from {self.address} within {effective_timeout}s"
            ) from None
        except ConnectError as e:
            await self._abort(transport)
            self._logger.warn(LogEvent.CONNECT_FAILED, str(e), error=str(e))
            raise
        except BrokerLinkError as e:
            await self._abort(transport)
            self._logger.warn(LogEvent.CONNECT_FAILED, str(e), error=str(e))
            raise ConnectError(f"Failed to connect to {self.address}: {e}") from e
        except BaseException:
            await self._abort(transport)
            raise

        self._state = ConnectionState.CONNECTED
        self._consecutive_heartbeat_misses = 0
        if self.config.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))
        self._logger.connected(self.address)

    async def _open_and_handshake(self, transport: Transport):
        await transport.open(self.address)
        self._transport = transport
        self._read_task = asyncio.create_task(self._read_loop(transport))

        hello = BrokerMessage.create_hello()
        try:
            future = await self._send(hello, transport)
            await future
        except RemoteError as e:
            raise ConnectError(f"Handshake rejected by {self.address}: {e}") from e

    async def _abort(self, transport: Transport):
        """Tear down a connect attempt that did not reach CONNECTED."""
        self._state = ConnectionState.DISCONNECTED
        if self._transport is transport:
            self._transport = None
        await self._stop_tasks()
        self._fail_pending(ConnectionLost("Connect attempt aborted"))
        await transport.close()

    async def send_request(self, message: BrokerMessage) -> asyncio.Future:
        """
        Write a request and return the future its reply will complete.

        Raises:
            ConnectionLost: not connected, or the write failed
        """
        if self._state is not ConnectionState.CONNECTED or self._transport is None:
            raise ConnectionLost(f"Not connected (state: {self._state.value})")
        return await self._send(message, self._transport)

    async def _send(self, message: BrokerMessage, transport: Transport) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self.pending_requests[message.id] = future
        try:
            data = self._codec.encode(message)
            async with self._write_lock:
                await transport.send(data)
        except TransportError as e:
            self.pending_requests.pop(message.id, None)
            self._handle_lost(transport, e)
            raise ConnectionLost(f"Failed to send request: {e}") from e
        except BaseException:
            self.pending_requests.pop(message.id, None)
            raise
        return future

    async def request(
        self, message: BrokerMessage, timeout: Optional[float] = None
    ) -> BrokerMessage:
        """
        Send a request and wait for its reply.

        Args:
            message: The request message
            timeout: Seconds to wait for the reply (None waits indefinitely)

        Returns:
            The RESPONSE or ACK reply

        Raises:
            Timeout: no reply in time; a late reply will be discarded
            RemoteError: the broker answered with an error
            ConnectionLost: the link dropped before the reply arrived
        """
        operation = message.type.value
        start_time = self._metrics.start_request() if self._metrics else time.perf_counter()
        self._logger.request_start(message.id, operation, message.path)

        try:
            future = await self.send_request(message)
            reply = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self.pending_requests.pop(message.id, None)
            error = Timeout(f"'{operation}' request timed out after {timeout} seconds")
            self._finish_request(message, start_time, error)
            raise error from None
        except asyncio.CancelledError as e:
            self.pending_requests.pop(message.id, None)
            self._finish_request(message, start_time, e)
            raise
        except BrokerLinkError as e:
            self._finish_request(message, start_time, e)
            raise

        self._finish_request(message, start_time, None)
        return reply

    def _finish_request(
        self,
        message: BrokerMessage,
        start_time: float,
        error: Optional[BaseException],
    ):
        if self._metrics:
            duration_ms = self._metrics.end_request(
                start_time,
                success=error is None,
                timed_out=isinstance(error, Timeout),
            )
        else:
            duration_ms = (time.perf_counter() - start_time) * 1000
        self._logger.request_end(
            request_id=message.id,
            operation=message.type.value,
            duration_ms=duration_ms,
            path=message.path,
            success=error is None,
            error=error,
        )

    async def _read_loop(self, transport: Transport):
        """Sole reader of the transport."""
        while True:
            try:
                data = await transport.receive()
                self._handle_data(data)
            except TransportClosed:
                self._handle_lost(transport, TransportError("Transport closed"))
                return
            except (TransportError, FramingError) as e:
                self._handle_lost(transport, e)
                return
            except Exception as e:
                self._handle_lost(
                    transport, TransportError(f"{type(e).__name__} in read loop: {e}")
                )
                return

    def _handle_data(self, data: bytes):
        try:
            message = self._codec.decode(data)
        except FramingError:
            raise
        except DecodeError as e:
            if self._metrics:
                self._metrics.record_decode_error()
            self._logger.warn(
                LogEvent.DECODE_ERROR,
                f"Dropped malformed message: {e}",
                request_id=e.request_id,
                error=str(e),
            )
            future = self.pending_requests.pop(e.request_id, None) if e.request_id else None
            if future and not future.done():
                future.set_exception(e)
            return

        if message.type is MessageType.NOTIFICATION:
            if self.on_notification:
                try:
                    self.on_notification(message)
                except Exception as e:
                    self._logger.error(
                        LogEvent.DECODE_ERROR,
                        f"Notification handler failed: {e}",
                        path=message.path,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
            return

        if not message.is_reply:
            self._logger.warn(
                LogEvent.DECODE_ERROR,
                f"Ignoring unexpected '{message.type.value}' message from broker",
                request_id=message.id,
            )
            return

        future = self.pending_requests.pop(message.id, None)
        if future is None:
            self._logger.debug(
                LogEvent.LATE_REPLY,
                "Discarding reply with no waiting request",
                request_id=message.id,
            )
            return
        if future.done():
            return

        if message.type is MessageType.ERROR:
            future.set_exception(RemoteError(message.code, message.error or ""))
        else:
            future.set_result(message)

    async def _heartbeat_loop(self, transport: Transport):
        """
        Periodically ping the broker.

        Too many consecutive misses are treated as a link failure.
        """
        while self._state is ConnectionState.CONNECTED and self._transport is transport:
            await asyncio.sleep(self.config.heartbeat_interval)
            if self._state is not ConnectionState.CONNECTED or self._transport is not transport:
                break

            ping = BrokerMessage.create_ping()
            sent_at = time.perf_counter()
            try:
                future = await self.send_request(ping)
                await asyncio.wait_for(future, self.config.heartbeat_timeout)
            except asyncio.TimeoutError:
                self.pending_requests.pop(ping.id, None)
                self._consecutive_heartbeat_misses += 1
                self._logger.heartbeat_missed(
                    consecutive=self._consecutive_heartbeat_misses,
                    max_allowed=self.config.heartbeat_max_misses,
                )
                if self._consecutive_heartbeat_misses >= self.config.heartbeat_max_misses:
                    self._logger.warn(
                        LogEvent.HEARTBEAT_TIMEOUT,
                        f"No heartbeat reply {self._consecutive_heartbeat_misses} times in a row",
                    )
                    self._handle_lost(
                        transport, TransportError("Broker stopped answering heartbeats")
                    )
                    break
                continue
            except ConnectionLost:
                break
            except RemoteError:
                # Any reply proves the broker is alive
                pass

            self._consecutive_heartbeat_misses = 0
            self._last_heartbeat_rtt_ms = (time.perf_counter() - sent_at) * 1000

    def _handle_lost(self, transport: Transport, reason: BaseException):
        """Transition to DISCONNECTED after a link failure. Runs at most once per link."""
        if transport is not self._transport or self._state is ConnectionState.DISCONNECTED:
            return

        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._transport = None

        self._fail_pending(ConnectionLost(f"Connection lost: {reason}"))

        current = asyncio.current_task()
        for task in (self._read_task, self._heartbeat_task):
            if task and task is not current and not task.done():
                task.cancel()
        self._read_task = None
        self._heartbeat_task = None

        closing = asyncio.ensure_future(transport.close())
        self._background.add(closing)
        closing.add_done_callback(self._background.discard)

        if self._metrics:
            self._metrics.record_connection_lost()
        self._logger.disconnected(str(reason))

        if was_connected and self.on_lost:
            self.on_lost(reason)

    def _fail_pending(self, error: BaseException):
        pending = list(self.pending_requests.values())
        self.pending_requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def _stop_tasks(self):
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._read_task, self._heartbeat_task)
            if task and task is not current and not task.done()
        ]
        self._read_task = None
        self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self):
        """Close the link. Pending requests fail with ConnectionLost."""
        transport = self._transport
        self._state = ConnectionState.DISCONNECTED
        self._transport = None

        await self._stop_tasks()
        self._fail_pending(ConnectionLost("Connection closed"))

        if transport:
            await transport.close()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
