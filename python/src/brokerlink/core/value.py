"""
Dynamically-typed signal values and their conversion to static types.

A Value is what travels on the wire: a tag (Kind) plus the data. Client code
asks for a ValueType and gets a plain Python object back, or a TypeMismatch /
RangeError when the tag does not allow that conversion. Nothing is coerced
silently: integers may move between widths only when they fit, float32 widens
to float64, and float64 narrows to float32 only when exact.
"""

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import RangeError, TypeMismatch


class Kind(Enum):
    """Wire tags of a Value."""

    UNSET = "unset"
    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STRING = "string"
    ARRAY = "array"


class ValueType(Enum):
    """Static types a Value can be converted to (and built from)."""

    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STRING = "string"

    BOOL_ARRAY = "bool[]"
    INT32_ARRAY = "int32[]"
    INT64_ARRAY = "int64[]"
    UINT32_ARRAY = "uint32[]"
    UINT64_ARRAY = "uint64[]"
    FLOAT32_ARRAY = "float32[]"
    FLOAT64_ARRAY = "float64[]"
    STRING_ARRAY = "string[]"

    @property
    def is_array(self) -> bool:
        return self.value.endswith("[]")

    @property
    def element(self) -> "ValueType":
        """Element type of an array type; scalars return themselves."""
        if self.is_array:
            return ValueType(self.value[:-2])
        return self

    @property
    def kind(self) -> Kind:
        """Wire tag produced by Value.of() for this type."""
        if self.is_array:
            return Kind.ARRAY
        return Kind(self.value)

    @classmethod
    def resolve(cls, spec: Union["ValueType", type, str]) -> "ValueType":
        """
        Accept a ValueType, a builtin type shorthand or a type name.

        bool -> BOOL, int -> INT64, float -> FLOAT64, str -> STRING.
        """
        if isinstance(spec, ValueType):
            return spec
        if isinstance(spec, type) and spec in _BUILTIN_TYPES:
            return _BUILTIN_TYPES[spec]
        if isinstance(spec, str):
            try:
                return cls(spec.lower())
            except ValueError:
                pass
        raise TypeError(f"Unsupported value type: {spec!r}")


_BUILTIN_TYPES = {
    bool: ValueType.BOOL,
    int: ValueType.INT64,
    float: ValueType.FLOAT64,
    str: ValueType.STRING,
}

_INT_RANGES = {
    Kind.INT32: (-(2**31), 2**31 - 1),
    Kind.INT64: (-(2**63), 2**63 - 1),
    Kind.UINT32: (0, 2**32 - 1),
    Kind.UINT64: (0, 2**64 - 1),
}

_FLOAT_KINDS = (Kind.FLOAT32, Kind.FLOAT64)


def _round_float32(x: float) -> float:
    """Round a Python float to the nearest float32, RangeError if out of range."""
    try:
        return struct.unpack("<f", struct.pack("<f", x))[0]
    except OverflowError:
        raise RangeError(f"{x!r} is out of range for float32")


def _check_int_range(x: int, kind: Kind) -> int:
    low, high = _INT_RANGES[kind]
    if not low <= x <= high:
        raise RangeError(f"{x} is out of range for {kind.value}")
    return x


def _at_index(exc: Exception, index: int) -> Exception:
    """Re-create a conversion error so it reports the offending array index."""
    return type(exc)(f"element {index}: {exc}", index=index)


@dataclass(frozen=True)
class Value:
    """
    Tagged signal value.

    data holds a bool, int, float or str for scalar kinds, a tuple of Value
    for ARRAY and None for UNSET.
    """

    kind: Kind
    data: Any = None

    def __post_init__(self):
        if self.kind is Kind.ARRAY and not isinstance(self.data, tuple):
            object.__setattr__(self, "data", tuple(self.data or ()))

    @classmethod
    def unset(cls) -> "Value":
        return cls(Kind.UNSET)

    @property
    def is_unset(self) -> bool:
        return self.kind is Kind.UNSET

    @classmethod
    def of(cls, x: Any, value_type: Union[ValueType, type, str]) -> "Value":
        """
        Build a Value of the given static type from a Python object.

        Raises:
            TypeMismatch: x is not a member of the static type
            RangeError: x is an integer that does not fit the type's width
        """
        value_type = ValueType.resolve(value_type)

        if value_type.is_array:
            if isinstance(x, (str, bytes)) or not isinstance(x, (list, tuple)):
                raise TypeMismatch(
                    f"Expected a sequence for {value_type.value}, got {type(x).__name__}"
                )
            items = []
            for index, item in enumerate(x):
                try:
                    items.append(cls.of(item, value_type.element))
                except (TypeMismatch, RangeError) as e:
                    raise _at_index(e, index) from e
            return cls(Kind.ARRAY, tuple(items))

        kind = value_type.kind
        if kind is Kind.BOOL:
            if not isinstance(x, bool):
                raise TypeMismatch(f"Expected bool, got {type(x).__name__}")
            return cls(kind, x)

        if kind in _INT_RANGES:
            if isinstance(x, bool) or not isinstance(x, int):
                raise TypeMismatch(f"Expected int for {kind.value}, got {type(x).__name__}")
            return cls(kind, _check_int_range(x, kind))

        if kind in _FLOAT_KINDS:
            if isinstance(x, bool) or not isinstance(x, (int, float)):
                raise TypeMismatch(f"Expected float for {kind.value}, got {type(x).__name__}")
            x = float(x)
            if kind is Kind.FLOAT32:
                x = _round_float32(x)
            return cls(kind, x)

        if not isinstance(x, str):
            raise TypeMismatch(f"Expected str, got {type(x).__name__}")
        return cls(Kind.STRING, x)

    @classmethod
    def infer(cls, x: Any) -> "Value":
        """Build a Value with the tag implied by the Python type of x."""
        if isinstance(x, Value):
            return x
        if x is None:
            return cls.unset()
        if isinstance(x, bool):
            return cls(Kind.BOOL, x)
        if isinstance(x, int):
            if _INT_RANGES[Kind.INT64][0] <= x <= _INT_RANGES[Kind.INT64][1]:
                return cls(Kind.INT64, x)
            return cls(Kind.UINT64, _check_int_range(x, Kind.UINT64))
        if isinstance(x, float):
            return cls(Kind.FLOAT64, x)
        if isinstance(x, str):
            return cls(Kind.STRING, x)
        if isinstance(x, (list, tuple)):
            return cls(Kind.ARRAY, tuple(cls.infer(item) for item in x))
        raise TypeMismatch(f"Cannot infer a signal value from {type(x).__name__}")

    def as_type(self, value_type: Union[ValueType, type, str]) -> Any:
        """
        Convert to the given static type.

        An UNSET value converts to None for every type.

        Raises:
            TypeMismatch: the tag does not allow this conversion
            RangeError: numeric narrowing that would lose information
        """
        value_type = ValueType.resolve(value_type)
        if self.kind is Kind.UNSET:
            return None

        if value_type.is_array:
            if self.kind is not Kind.ARRAY:
                raise TypeMismatch(f"Cannot convert {self.kind.value} to {value_type.value}")
            result = []
            for index, item in enumerate(self.data):
                try:
                    result.append(item.as_type(value_type.element))
                except (TypeMismatch, RangeError) as e:
                    raise _at_index(e, index) from e
            return result

        target = value_type.kind
        if self.kind is Kind.ARRAY:
            raise TypeMismatch(f"Cannot convert array to {target.value}")

        if target in (Kind.BOOL, Kind.STRING):
            if self.kind is not target:
                raise TypeMismatch(f"Cannot convert {self.kind.value} to {target.value}")
            return self.data

        if target in _INT_RANGES:
            if self.kind not in _INT_RANGES:
                raise TypeMismatch(f"Cannot convert {self.kind.value} to {target.value}")
            return _check_int_range(self.data, target)

        if self.kind not in _FLOAT_KINDS:
            raise TypeMismatch(f"Cannot convert {self.kind.value} to {target.value}")
        if target is Kind.FLOAT64 or self.kind is Kind.FLOAT32:
            return self.data

        narrowed = _round_float32(self.data)
        if narrowed != self.data and not math.isnan(self.data):
            raise RangeError(f"{self.data!r} is not exactly representable as float32")
        return narrowed

    def to_python(self) -> Any:
        """Natural Python rendering: scalars as-is, arrays as lists, UNSET as None."""
        if self.kind is Kind.ARRAY:
            return [item.to_python() for item in self.data]
        return self.data
