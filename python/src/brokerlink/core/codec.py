"""
Wire codecs for the broker protocol.

The Connection only ever talks to the Codec interface, so the wire format can
be swapped without touching the Multiplexer or the Client.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import msgpack

from .errors import DecodeError, RangeError, TypeMismatch
from .message import APP_NAME, BrokerMessage, MessageType, View
from .metadata import Metadata
from .value import Kind, Value

# Fields each message type cannot do without
_REQUIRED_FIELDS = {
    MessageType.HELLO: (),
    MessageType.PING: (),
    MessageType.GET: ("path",),
    MessageType.SET: ("path",),
    MessageType.SUBSCRIBE: ("path",),
    MessageType.UNSUBSCRIBE: ("path", "ref"),
    MessageType.RESPONSE: (),
    MessageType.ACK: (),
    MessageType.ERROR: ("code",),
    MessageType.NOTIFICATION: ("path",),
}

# Types that must carry a payload: a value, or metadata for the metadata view
_PAYLOAD_TYPES = frozenset(
    {MessageType.SET, MessageType.RESPONSE, MessageType.NOTIFICATION}
)


class Codec(ABC):
    """Translates BrokerMessage objects to and from bytes."""

    @abstractmethod
    def encode(self, message: BrokerMessage) -> bytes:
        """Serialize a message."""

    @abstractmethod
    def decode(self, data: bytes) -> BrokerMessage:
        """
        Deserialize a message.

        Raises:
            DecodeError: the payload is malformed; the byte stream itself is fine
        """


def encode_value(value: Value) -> Dict[str, Any]:
    """Tagged wire form of a Value."""
    if value.kind is Kind.UNSET:
        return {"t": Kind.UNSET.value}
    if value.kind is Kind.ARRAY:
        return {"t": Kind.ARRAY.value, "v": [encode_value(item) for item in value.data]}
    return {"t": value.kind.value, "v": value.data}


def decode_value(obj: Any) -> Value:
    """
    Rebuild a Value from its tagged wire form.

    Raises:
        DecodeError: unknown tag or data that does not match the tag
    """
    if not isinstance(obj, dict) or not isinstance(obj.get("t"), str):
        raise DecodeError(f"Malformed value: {obj!r}")
    try:
        kind = Kind(obj["t"])
    except ValueError:
        raise DecodeError(f"Unknown value tag '{obj['t']}'")

    if kind is Kind.UNSET:
        return Value.unset()
    if "v" not in obj:
        raise DecodeError(f"Value tagged '{kind.value}' has no data")

    data = obj["v"]
    if kind is Kind.ARRAY:
        if not isinstance(data, (list, tuple)):
            raise DecodeError("Array value data is not a list")
        return Value(Kind.ARRAY, tuple(decode_value(item) for item in data))

    try:
        return Value.of(data, kind.value)
    except (TypeMismatch, RangeError) as e:
        raise DecodeError(f"Bad data for '{kind.value}' value: {e}") from e


class MsgpackCodec(Codec):
    """
    msgpack codec.

    Each message is one msgpack map. Values are tagged so that integer widths
    and float32/float64 survive the trip.
    """

    def __init__(
        self,
        max_str_len: int = 10 * 1024 * 1024,
        max_bin_len: int = 10 * 1024 * 1024,
        max_array_len: int = 100_000,
        max_map_len: int = 100_000,
    ):
        self._limits = {
            "max_str_len": max_str_len,
            "max_bin_len": max_bin_len,
            "max_array_len": max_array_len,
            "max_map_len": max_map_len,
        }

    def encode(self, message: BrokerMessage) -> bytes:
        data = message.to_dict()
        data["type"] = message.type.value
        if message.value is not None:
            data["value"] = encode_value(message.value)
        if message.view is not None:
            data["view"] = message.view.value
        if message.metadata is not None:
            data["metadata"] = message.metadata.to_dict()
        return msgpack.packb(data, use_bin_type=True)

    def decode(self, data: bytes) -> BrokerMessage:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise DecodeError(f"Expected bytes, got {type(data).__name__}")
        if len(data) == 0:
            raise DecodeError("Empty message data")

        try:
            unpacked = msgpack.unpackb(data, raw=False, **self._limits)
        except msgpack.exceptions.ExtraData as e:
            raise DecodeError(f"Message contains extra data: {e}") from e
        except (ValueError, TypeError, msgpack.exceptions.UnpackException) as e:
            raise DecodeError(f"Failed to unpack message: {e}") from e

        if not isinstance(unpacked, dict):
            raise DecodeError(f"Expected a map, got {type(unpacked).__name__}")

        msg_id = unpacked.get("id")
        request_id: Optional[str] = msg_id if isinstance(msg_id, str) and msg_id else None
        if request_id is None:
            raise DecodeError("Message has no id")
        if unpacked.get("app") != APP_NAME:
            raise DecodeError(f"Unexpected app tag {unpacked.get('app')!r}", request_id)

        try:
            msg_type = MessageType(unpacked.get("type"))
        except ValueError:
            raise DecodeError(f"Unknown message type {unpacked.get('type')!r}", request_id)

        for name in _REQUIRED_FIELDS[msg_type]:
            if unpacked.get(name) is None:
                raise DecodeError(f"'{msg_type.value}' message missing '{name}'", request_id)
        if (
            msg_type in _PAYLOAD_TYPES
            and unpacked.get("value") is None
            and unpacked.get("metadata") is None
        ):
            raise DecodeError(f"'{msg_type.value}' message missing 'value'", request_id)

        fields = {"type": msg_type, "id": request_id}
        for name in ("path", "ref", "code", "error"):
            field = unpacked.get(name)
            if field is None:
                continue
            if not isinstance(field, str) or (name == "path" and not field):
                raise DecodeError(f"Field '{name}' must be a non-empty string", request_id)
            fields[name] = field

        seq = unpacked.get("seq")
        if seq is not None:
            if isinstance(seq, bool) or not isinstance(seq, int):
                raise DecodeError("Field 'seq' must be an integer", request_id)
            fields["seq"] = seq

        timestamp = unpacked.get("timestamp")
        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            fields["timestamp"] = float(timestamp)

        if unpacked.get("value") is not None:
            try:
                fields["value"] = decode_value(unpacked["value"])
            except DecodeError as e:
                raise DecodeError(str(e), request_id) from e

        view = unpacked.get("view")
        if view is not None:
            try:
                fields["view"] = View(view)
            except ValueError:
                raise DecodeError(f"Unknown view {view!r}", request_id)

        if unpacked.get("metadata") is not None:
            try:
                fields["metadata"] = Metadata.from_dict(unpacked["metadata"])
            except ValueError as e:
                raise DecodeError(f"Bad metadata: {e}", request_id) from e

        return BrokerMessage(**fields)
