"""
Exception hierarchy for brokerlink.

Every error raised by the library derives from BrokerLinkError so callers can
catch the whole family at once. Several classes also derive from the closest
builtin (TypeError, ValueError, TimeoutError, OverflowError) so generic
handlers keep working.
"""

from typing import Optional


class BrokerLinkError(Exception):
    """Base class for all brokerlink errors."""


class ConnectError(BrokerLinkError):
    """Broker unreachable, handshake rejected, or reconnect attempts exhausted."""


class TransportError(BrokerLinkError):
    """Mid-operation transport failure."""


class TransportClosed(TransportError):
    """The transport was closed while an operation was in progress."""


class DecodeError(BrokerLinkError):
    """
    A wire message could not be decoded.

    request_id is filled in when the id could still be recovered from the
    payload, so the matching pending request can be failed instead of waiting
    for its timeout.
    """

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id


class FramingError(DecodeError):
    """Transport framing is corrupt; the connection cannot be trusted anymore."""


class TypeMismatch(BrokerLinkError, TypeError):
    """A Value cannot be converted to the requested static type."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class RangeError(BrokerLinkError, ValueError):
    """A numeric Value does not fit the requested (narrower) static type."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class Timeout(BrokerLinkError, TimeoutError):
    """A connect or request did not complete within its timeout."""


class ConnectTimeout(ConnectError, Timeout):
    """No handshake reply within the connect timeout."""


class ConnectionLost(BrokerLinkError):
    """The connection dropped while a request or stream depended on it."""


class ClientClosed(BrokerLinkError):
    """The client has been closed."""


class RemoteError(BrokerLinkError):
    """The broker answered a request with an error reply."""

    UNKNOWN_PATH = "unknown_path"
    INVALID_TYPE = "invalid_type"
    ACCESS_DENIED = "access_denied"
    OUT_OF_BOUNDS = "out_of_bounds"
    INTERNAL = "internal"

    def __init__(self, code: str, message: str = ""):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


class SubscribeError(BrokerLinkError):
    """The broker (or the link) refused a subscription registration."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Subscribe to '{path}' failed: {reason}")
        self.path = path
        self.reason = reason


class ReconnectFailed(BrokerLinkError):
    """Terminal for one stream: its resubscribe after a reconnect failed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Resubscribe to '{path}' failed after reconnect: {reason}")
        self.path = path
        self.reason = reason


class SubscriptionOverflow(BrokerLinkError, OverflowError):
    """Non-fatal: the consumer fell behind and the oldest updates were dropped."""

    def __init__(self, dropped: int):
        super().__init__(f"Subscription queue overflowed, {dropped} update(s) dropped")
        self.dropped = dropped
