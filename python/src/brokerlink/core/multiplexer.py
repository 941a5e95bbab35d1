"""
Subscription multiplexer.

Many independent subscriptions share one Connection. Each subscription gets a
client-side id (never reused) and, for every broker session, a token: the id
of the subscribe request that registered it. Notifications carry the token,
so each one reaches exactly the subscription it was produced for, in the
order the broker sent it.

The subscription table belongs to the event loop. dispatch, discard and
on_connection_lost never suspend, so no table mutation straddles an await.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .connection import Connection
from .errors import (
    BrokerLinkError,
    ConnectionLost,
    ReconnectFailed,
    RemoteError,
    SubscribeError,
)
from .logging import LogEvent, StructuredLogger
from .message import BrokerMessage, View, new_request_id
from .metrics import Metrics
from .queue import SubscriptionQueue


@dataclass
class Subscription:
    """One subscriber's interest in one path."""

    id: int
    path: str
    queue: SubscriptionQueue
    view: View = View.CURRENT
    token: Optional[str] = None
    live: bool = True
    last_seq: Optional[int] = None
    resubscribing: bool = False
    delivered: int = field(default=0, compare=False)


class Multiplexer:
    """Routes notifications from one Connection to many subscription queues."""

    def __init__(
        self,
        connection: Connection,
        queue_capacity: int = 64,
        request_timeout: Optional[float] = None,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
    ):
        self._connection = connection
        self.queue_capacity = queue_capacity
        self.request_timeout = request_timeout
        self._logger = logger or StructuredLogger()
        self._metrics = metrics

        self._ids = itertools.count(1)
        self._entries: Dict[int, Subscription] = {}
        self._tokens: Dict[str, int] = {}
        self._background = set()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, subscription_id: int) -> bool:
        return subscription_id in self._entries

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self._entries.get(subscription_id)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._entries.values())

    async def register(self, path: str, view: View = View.CURRENT) -> Subscription:
        """
        Subscribe to one view of a path on the broker and add a live entry.

        The token is mapped before the request goes out, so a notification
        that overtakes the reply is still routed.

        Raises:
            SubscribeError: the broker rejected the path or the request failed;
                no entry is kept
        """
        entry = Subscription(
            id=next(self._ids),
            path=path,
            queue=SubscriptionQueue(self.queue_capacity),
            view=view,
        )
        token = new_request_id()
        entry.token = token
        self._entries[entry.id] = entry
        self._tokens[token] = entry.id

        try:
            await self._connection.request(
                BrokerMessage.create_subscribe(path, msg_id=token, view=view),
                timeout=self.request_timeout,
            )
        except RemoteError as e:
            self._forget(entry)
            raise SubscribeError(path, f"rejected by broker ({e.code})") from e
        except BrokerLinkError as e:
            self._forget(entry)
            raise SubscribeError(path, str(e)) from e
        except BaseException:
            self._forget(entry)
            raise

        if self._metrics:
            self._metrics.record_subscribed()
        self._logger.subscribed(entry.id, path)
        return entry

    def _forget(self, entry: Subscription) -> Optional[str]:
        """Drop an entry from the table; returns the token it held."""
        entry.live = False
        self._entries.pop(entry.id, None)
        token, entry.token = entry.token, None
        if token is not None:
            self._tokens.pop(token, None)
        entry.queue.close(discard=True)
        return token

    def discard(self, subscription_id: int) -> Optional[Subscription]:
        """
        Local half of cancel: mark dead and close the queue.

        Nothing is delivered to the consumer after this returns.
        """
        entry = self._entries.get(subscription_id)
        if entry is None:
            return None
        entry.token = self._forget(entry)
        if self._metrics:
            self._metrics.record_unsubscribed()
        self._logger.unsubscribed(entry.id, entry.path)
        return entry

    async def cancel(self, subscription_id: int):
        """
        Cancel a subscription.

        The broker is told best-effort; a failure to reach it does not keep
        the subscription alive locally.
        """
        entry = self.discard(subscription_id)
        if entry is None or entry.token is None:
            return
        await self._unsubscribe(entry.path, entry.token)

    def cancel_soon(self, subscription_id: int):
        """Cancel from synchronous code (e.g. a dropped stream handle)."""
        entry = self.discard(subscription_id)
        if entry is None or entry.token is None:
            return
        task = asyncio.ensure_future(self._unsubscribe(entry.path, entry.token))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _unsubscribe(self, path: str, token: str):
        if not self._connection.is_connected:
            return
        try:
            await self._connection.request(
                BrokerMessage.create_unsubscribe(path, token),
                timeout=self.request_timeout,
            )
        except BrokerLinkError as e:
            self._logger.debug(
                LogEvent.UNSUBSCRIBE,
                f"Broker not told about unsubscribe from {path}: {e}",
                path=path,
                error=str(e),
            )

    def dispatch(self, notification: BrokerMessage):
        """
        Push a notification's payload to the subscription(s) it belongs to.

        With a token the notification goes to that one subscription. Without
        one it fans out to every live subscription on the same path and view.
        Unknown tokens and paths (e.g. just after a cancel) are dropped.
        """
        if notification.ref is not None:
            subscription_id = self._tokens.get(notification.ref)
            entry = self._entries.get(subscription_id) if subscription_id is not None else None
            if entry is None or entry.path != notification.path:
                self._drop()
                return
            self._deliver(entry, notification)
            return

        targets = [
            entry
            for entry in self._entries.values()
            if entry.path == notification.path
            and entry.view is notification.addressed_view
            and entry.token is not None
        ]
        if not targets:
            self._drop()
        for entry in targets:
            self._deliver(entry, notification)

    def _deliver(self, entry: Subscription, notification: BrokerMessage):
        if not entry.live:
            self._drop()
            return
        seq = notification.seq
        if seq is not None:
            if entry.last_seq is not None and seq <= entry.last_seq:
                # Duplicate or stale within this broker session
                self._drop()
                return
            entry.last_seq = seq

        payload = notification.metadata if entry.view is View.METADATA else notification.value
        if payload is None:
            self._drop()
            return

        accepted = entry.queue.put(payload)
        if self._metrics:
            # An overflowing put counts as one drop, not as a delivery
            if accepted:
                self._metrics.record_delivered()
            else:
                self._metrics.record_dropped(overflow=True)
        if accepted:
            entry.delivered += 1
        else:
            self._logger.queue_overflow(entry.id, entry.path, entry.queue.capacity)

    def _drop(self):
        if self._metrics:
            self._metrics.record_dropped()

    def on_connection_lost(self, will_reconnect: bool):
        """
        Forget the broker session's tokens.

        If a reconnect will follow, live streams suspend until their
        resubscribe completes; otherwise they end with ConnectionLost.
        """
        self._tokens.clear()
        for entry in self._entries.values():
            entry.token = None
            entry.last_seq = None

        if will_reconnect:
            for entry in self._entries.values():
                entry.queue.pause()
        else:
            self.fail_all(ConnectionLost("Connection to broker lost"))

    async def on_reconnect(self):
        """
        Replay the broker-side subscribe for every live entry.

        Ids and queues stay the same. An entry that the broker now rejects
        ends with ReconnectFailed; other streams are unaffected.
        """
        entries = [
            entry
            for entry in self._entries.values()
            if entry.live and not entry.resubscribing and entry.token is None
        ]
        for entry in entries:
            entry.resubscribing = True
        if entries:
            await asyncio.gather(*(self._resubscribe(entry) for entry in entries))

    async def _resubscribe(self, entry: Subscription):
        token = new_request_id()
        entry.token = token
        self._tokens[token] = entry.id
        try:
            await self._connection.request(
                BrokerMessage.create_subscribe(entry.path, msg_id=token, view=entry.view),
                timeout=self.request_timeout,
            )
        except ConnectionLost:
            # Link dropped again; stay paused for the next reconnect
            if entry.token == token:
                self._tokens.pop(token, None)
                entry.token = None
            return
        except BrokerLinkError as e:
            if entry.live and self._entries.get(entry.id) is entry:
                self._entries.pop(entry.id, None)
                self._tokens.pop(token, None)
                entry.live = False
                entry.token = None
                entry.queue.close(ReconnectFailed(entry.path, str(e)))
                if self._metrics:
                    self._metrics.record_unsubscribed()
                self._logger.warn(
                    LogEvent.RESUBSCRIBE,
                    f"Resubscribe to {entry.path} failed: {e}",
                    subscription_id=entry.id,
                    path=entry.path,
                    error=str(e),
                )
            return
        finally:
            entry.resubscribing = False

        if entry.live:
            entry.queue.resume()
            self._logger.info(
                LogEvent.RESUBSCRIBE,
                f"Resubscribed to {entry.path}",
                subscription_id=entry.id,
                path=entry.path,
            )

    def fail_all(self, error: BaseException):
        """End every stream with a terminal error."""
        entries = list(self._entries.values())
        self._entries.clear()
        self._tokens.clear()
        for entry in entries:
            entry.live = False
            entry.token = None
            entry.queue.close(error)
            if self._metrics:
                self._metrics.record_unsubscribed()

    def close_all(self):
        """End every stream without an error (client shutdown)."""
        entries = list(self._entries.values())
        self._entries.clear()
        self._tokens.clear()
        for entry in entries:
            entry.live = False
            entry.token = None
            entry.queue.close(discard=True)
            if self._metrics:
                self._metrics.record_unsubscribed()
