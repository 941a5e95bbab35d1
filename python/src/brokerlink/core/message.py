"""
Broker protocol messages.

BrokerMessage is wire-agnostic: the codec decides how it is serialized.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from .metadata import Metadata
from .value import Value


class MessageType(Enum):
    """Message kinds spoken between client and broker."""

    # Client -> broker
    HELLO = "hello"
    PING = "ping"
    GET = "get"
    SET = "set"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # Broker -> client
    RESPONSE = "response"
    ACK = "ack"
    ERROR = "error"
    NOTIFICATION = "notification"


REQUEST_TYPES = frozenset(
    {
        MessageType.HELLO,
        MessageType.PING,
        MessageType.GET,
        MessageType.SET,
        MessageType.SUBSCRIBE,
        MessageType.UNSUBSCRIBE,
    }
)
REPLY_TYPES = frozenset({MessageType.RESPONSE, MessageType.ACK, MessageType.ERROR})


class View(Enum):
    """Which side of a signal a get, set or subscribe addresses."""

    CURRENT = "current"
    TARGET = "target"
    METADATA = "metadata"


APP_NAME = "brokerlink_v1"


def new_request_id() -> str:
    """Client-chosen correlation id for a request."""
    return str(uuid.uuid4())


class BrokerMessage:
    """
    Message container for the broker protocol.

    Core fields (always present):
    - app: str = APP_NAME
    - id: str = request id (replies echo the id of their request)
    - type: MessageType
    - timestamp: float = unix timestamp

    Optional fields, depending on type:
    - path: str = signal path (get, set, subscribe, unsubscribe, notification)
    - value: Value = signal value (set, response, notification)
    - view: View = addressed side of the signal, omitted for CURRENT
      (get, set, subscribe, notification)
    - metadata: Metadata = signal description (metadata set, response, notification)
    - ref: str = id of the subscribe request (unsubscribe, notification)
    - seq: int = broker sequence marker (notification)
    - code: str = machine-readable error code (error)
    - error: str = human-readable error message (error)
    """

    def __init__(self, **kwargs):
        self.app = APP_NAME
        self.id = new_request_id()
        self.type: Optional[MessageType] = None
        self.timestamp = time.time()
        self.path: Optional[str] = None
        self.value: Optional[Value] = None
        self.view: Optional[View] = None
        self.metadata: Optional[Metadata] = None
        self.ref: Optional[str] = None
        self.seq: Optional[int] = None
        self.code: Optional[str] = None
        self.error: Optional[str] = None

        for key, value in kwargs.items():
            setattr(self, key, value)

    def __repr__(self):
        kind = self.type.value if self.type else None
        return f"BrokerMessage(type={kind!r}, id={self.id!r}, path={self.path!r})"

    @property
    def is_request(self) -> bool:
        return self.type in REQUEST_TYPES

    @property
    def is_reply(self) -> bool:
        return self.type in REPLY_TYPES

    # Requests

    @classmethod
    def create_hello(cls, msg_id: Optional[str] = None):
        return cls(type=MessageType.HELLO, id=msg_id or new_request_id())

    @classmethod
    def create_ping(cls, msg_id: Optional[str] = None):
        return cls(type=MessageType.PING, id=msg_id or new_request_id())

    @classmethod
    def create_get(
        cls, path: str, msg_id: Optional[str] = None, view: Optional[View] = None
    ):
        return cls(
            type=MessageType.GET,
            id=msg_id or new_request_id(),
            path=path,
            view=_wire_view(view),
        )

    @classmethod
    def create_set(
        cls,
        path: str,
        value: Optional[Value],
        msg_id: Optional[str] = None,
        view: Optional[View] = None,
        metadata: Optional[Metadata] = None,
    ):
        """A metadata set carries metadata instead of a value."""
        return cls(
            type=MessageType.SET,
            id=msg_id or new_request_id(),
            path=path,
            value=value,
            view=_wire_view(view),
            metadata=metadata,
        )

    @classmethod
    def create_subscribe(
        cls, path: str, msg_id: Optional[str] = None, view: Optional[View] = None
    ):
        """The id of a subscribe request becomes the token its notifications carry."""
        return cls(
            type=MessageType.SUBSCRIBE,
            id=msg_id or new_request_id(),
            path=path,
            view=_wire_view(view),
        )

    @classmethod
    def create_unsubscribe(cls, path: str, token: str, msg_id: Optional[str] = None):
        return cls(
            type=MessageType.UNSUBSCRIBE,
            id=msg_id or new_request_id(),
            path=path,
            ref=token,
        )

    # Replies

    @classmethod
    def create_response(
        cls, value: Optional[Value], msg_id: str, metadata: Optional[Metadata] = None
    ):
        return cls(type=MessageType.RESPONSE, id=msg_id, value=value, metadata=metadata)

    @classmethod
    def create_ack(cls, msg_id: str):
        return cls(type=MessageType.ACK, id=msg_id)

    @classmethod
    def create_error(cls, code: str, error: str, msg_id: str):
        return cls(type=MessageType.ERROR, id=msg_id, code=code, error=error)

    @classmethod
    def create_notification(
        cls,
        path: str,
        value: Optional[Value],
        token: Optional[str] = None,
        seq: Optional[int] = None,
        view: Optional[View] = None,
        metadata: Optional[Metadata] = None,
    ):
        return cls(
            type=MessageType.NOTIFICATION,
            id=new_request_id(),
            path=path,
            value=value,
            ref=token,
            seq=seq,
            view=_wire_view(view),
            metadata=metadata,
        )

    @property
    def addressed_view(self) -> View:
        return self.view or View.CURRENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dict, dropping unset optional fields."""
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith("_") and value is not None
        }


def _wire_view(view: Optional[View]) -> Optional[View]:
    # CURRENT is the default and stays off the wire
    if view is None or view is View.CURRENT:
        return None
    return view
