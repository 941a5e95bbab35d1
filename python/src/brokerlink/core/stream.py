"""
Consumer-side handle for one subscription.
"""

import asyncio
import weakref
from typing import TYPE_CHECKING, Any, Optional

from .message import View
from .queue import QueueReader
from .value import ValueType

if TYPE_CHECKING:
    from .multiplexer import Multiplexer


class Stream:
    """
    Lazy, non-restartable sequence of typed values for one path.

    Values are converted when read, so asking for the wrong type raises
    TypeMismatch (or RangeError) for that read only. SubscriptionOverflow is
    also per-read. ReconnectFailed, ConnectionLost and ConnectError are
    terminal: raised once, after which the stream is exhausted.

    Usage:
        stream = await client.subscribe_value("Vehicle.Speed", ValueType.FLOAT32)
        async for speed in stream:
            print(speed)

        # Or read one value at a time
        speed = await stream.next()
        await stream.cancel()

    The stream holds a read-only view of its queue and only a weak reference
    to the multiplexer; dropping it cancels the subscription. A metadata
    stream yields Metadata objects as they arrive.
    """

    def __init__(
        self,
        subscription_id: int,
        path: str,
        reader: QueueReader,
        multiplexer: "Multiplexer",
        value_type: Optional[ValueType] = None,
        view: View = View.CURRENT,
    ):
        self.id = subscription_id
        self.path = path
        self.value_type = value_type
        self.view = view
        self._reader = reader
        self._multiplexer = weakref.ref(multiplexer)
        self._loop = asyncio.get_running_loop()
        self._cancelled = False

    def __repr__(self):
        kind = self.value_type.value if self.value_type else "any"
        return (
            f"Stream(id={self.id}, path={self.path!r}, view={self.view.value}, type={kind})"
        )

    @property
    def closed(self) -> bool:
        """True once cancelled or ended by the client."""
        return self._cancelled or self._reader.closed

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        if self._cancelled:
            raise StopAsyncIteration
        value = await self._reader.get()
        if self.view is View.METADATA:
            return value
        if self.value_type is None:
            return value.to_python()
        return value.as_type(self.value_type)

    async def next(self) -> Any:
        """
        Read the next value.

        Raises:
            StopAsyncIteration: the stream has ended
        """
        return await self.__anext__()

    async def cancel(self):
        """Unsubscribe. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        multiplexer = self._multiplexer()
        if multiplexer is not None:
            await multiplexer.cancel(self.id)

    async def aclose(self):
        await self.cancel()

    async def __aenter__(self) -> "Stream":
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.cancel()

    def __del__(self):
        """Dropping the handle cancels the subscription."""
        if self._cancelled:
            return
        self._cancelled = True
        multiplexer = self._multiplexer()
        if multiplexer is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(multiplexer.cancel_soon, self.id)
        except RuntimeError:
            # Loop closed between the check and the call
            pass
