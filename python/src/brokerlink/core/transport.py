"""
Transports carry opaque message payloads between the client and the broker.

ZmqTransport talks to the broker through a ZeroMQ DEALER socket. Each payload
travels as [empty_delimiter, payload], the envelope a ROUTER peer expects.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import zmq
import zmq.asyncio

from .config import normalize_address
from .errors import ConnectError, FramingError, TransportClosed, TransportError


class Transport(ABC):
    """Message-stream link to one broker address."""

    @abstractmethod
    async def open(self, address: str) -> None:
        """
        Open the link.

        Raises:
            ConnectError: the address is invalid or cannot be reached
        """

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Send one payload.

        Raises:
            TransportError: the link failed
        """

    @abstractmethod
    async def receive(self) -> bytes:
        """
        Wait for the next payload.

        Raises:
            TransportClosed: close() was called
            TransportError: the link failed
            FramingError: the transport envelope is corrupt
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the link. Safe to call more than once."""


class ZmqTransport(Transport):
    """Async ZeroMQ DEALER transport."""

    def __init__(
        self,
        context: Optional[zmq.asyncio.Context] = None,
        send_retries: int = 5,
        retry_delay: float = 0.1,
    ):
        self._own_context = context is None
        self.context: Optional[zmq.asyncio.Context] = context
        self.socket: Optional[zmq.asyncio.Socket] = None
        self.endpoint: Optional[str] = None
        self.send_retries = send_retries
        self.retry_delay = retry_delay
        self._closed = False

    async def open(self, address: str) -> None:
        try:
            self.endpoint = normalize_address(address)
        except ValueError as e:
            raise ConnectError(str(e)) from e

        try:
            if self.context is None:
                self.context = zmq.asyncio.Context()
            self.socket = self.context.socket(zmq.DEALER)
            self.socket.setsockopt(zmq.LINGER, 0)
            self.socket.connect(self.endpoint)
        except zmq.ZMQError as e:
            await self.close()
            raise ConnectError(f"Failed to connect to {self.endpoint}: {e}") from e
        self._closed = False

    async def send(self, data: bytes) -> None:
        if self._closed or self.socket is None:
            raise TransportClosed("Transport is closed")

        for attempt in range(self.send_retries):
            try:
                await self.socket.send_multipart([b"", data], zmq.NOBLOCK)
                return
            except zmq.Again:
                # Peer not ready (HWM reached or not connected yet)
                if attempt < self.send_retries - 1:
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise TransportError("Failed to send: socket busy after retries")
            except zmq.ZMQError as e:
                raise TransportError(f"Failed to send: {e}") from e

    async def receive(self) -> bytes:
        if self._closed or self.socket is None:
            raise TransportClosed("Transport is closed")

        try:
            frames = await self.socket.recv_multipart()
        except asyncio.CancelledError:
            # Closing the socket cancels its pending receive
            if self._closed:
                raise TransportClosed("Transport is closed") from None
            raise
        except zmq.ZMQError as e:
            if self._closed:
                raise TransportClosed("Transport is closed") from e
            raise TransportError(f"Receive failed: {e}") from e

        # DEALER receives: [empty_frame, message_data]
        if len(frames) != 2 or frames[0] != b"":
            raise FramingError(f"Unexpected envelope with {len(frames)} frame(s)")
        return frames[1]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self.socket is not None:
            self.socket.close(linger=0)
            self.socket = None
        if self._own_context and self.context is not None:
            self.context.term()
            self.context = None
