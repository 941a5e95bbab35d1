"""
Signal metadata: what a path is, rather than what it currently holds.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from .value import ValueType


class EntryType(Enum):
    """Role of a signal in the tree."""

    SENSOR = "sensor"
    ACTUATOR = "actuator"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class Metadata:
    """
    Description of one signal.

    Every field is optional: a broker reports what it knows, and a set only
    sends the fields that are filled in. min/max/allowed restrict the values
    the broker accepts for the signal.
    """

    data_type: Optional[ValueType] = None
    entry_type: Optional[EntryType] = None
    description: Optional[str] = None
    comment: Optional[str] = None
    deprecation: Optional[str] = None
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    allowed: Optional[List[Any]] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Plain wire form, dropping unset fields."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif f.name == "allowed":
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metadata":
        """
        Rebuild metadata from its wire form. Unknown keys are ignored.

        Raises:
            ValueError: a known field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ValueError(f"Metadata must be a map, got {type(data).__name__}")

        kwargs: Dict[str, Any] = {}
        if data.get("data_type") is not None:
            kwargs["data_type"] = ValueType(data["data_type"])
        if data.get("entry_type") is not None:
            kwargs["entry_type"] = EntryType(data["entry_type"])
        for name in ("description", "comment", "deprecation", "unit"):
            value = data.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"Metadata field '{name}' must be a string")
            kwargs[name] = value
        for name in ("min", "max"):
            value = data.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Metadata field '{name}' must be a number")
            kwargs[name] = value
        allowed = data.get("allowed")
        if allowed is not None:
            if not isinstance(allowed, (list, tuple)):
                raise ValueError("Metadata field 'allowed' must be a list")
            kwargs["allowed"] = list(allowed)
        return cls(**kwargs)
