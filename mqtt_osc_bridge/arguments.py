"""
OSC Arguments

Tagged argument values shared by both directions of the bridge.

An OSC argument list is heterogeneous. Rather than passing bare Python
objects around and sniffing their types at every seam, each value is
wrapped once in an OscArgument carrying an explicit ArgumentKind.
"""

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Tuple, Union

from pythonosc.osc_message_builder import OscMessageBuilder

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


class PayloadError(ValueError):
    """A payload or argument could not be translated."""


class ArgumentKind(str, Enum):
    """Type tag for an OscArgument."""
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    BLOB = "blob"
    NIL = "nil"
    MIDI = "midi"
    ARRAY = "array"


@dataclass(frozen=True)
class OscArgument:
    """
    Single OSC argument with its type tag.

    Attributes:
        kind: Which variant this is
        value: The Python value (str, int, float, bool, datetime, bytes or None;
            a 4-tuple of ints for MIDI, a tuple of OscArguments for ARRAY)
    """
    kind: ArgumentKind
    value: Any = None

    def __str__(self) -> str:
        return str(self.to_json())

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_json(cls, value: Any) -> "OscArgument":
        """Wrap a value decoded from a JSON payload. Strings are never coerced."""
        # bool is a subclass of int, check it first
        if isinstance(value, bool):
            return cls(ArgumentKind.BOOL, value)
        if isinstance(value, int):
            return cls(ArgumentKind.INT, value)
        if isinstance(value, float):
            return cls(ArgumentKind.FLOAT, value)
        if isinstance(value, str):
            return cls(ArgumentKind.STRING, value)
        if value is None:
            return cls(ArgumentKind.NIL, None)
        raise PayloadError(f"Unsupported argument {value!r}: arguments must be scalars")

    @classmethod
    def from_value(cls, value: Any) -> "OscArgument":
        """Wrap a configured value (JSON scalars plus timestamps)."""
        if isinstance(value, OscArgument):
            return value
        if isinstance(value, datetime):
            return cls(ArgumentKind.TIMESTAMP, value)
        return cls.from_json(value)

    @classmethod
    def from_wire(cls, value: Any) -> "OscArgument":
        """Wrap a parameter decoded by python-osc."""
        if isinstance(value, (bytes, bytearray)):
            return cls(ArgumentKind.BLOB, bytes(value))
        if isinstance(value, datetime):
            return cls(ArgumentKind.TIMESTAMP, value)
        # python-osc decodes timetag arguments as (datetime, fraction)
        if (
            isinstance(value, tuple)
            and len(value) == 2
            and isinstance(value[0], datetime)
        ):
            stamp = value[0]
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            return cls(ArgumentKind.TIMESTAMP, stamp)
        # MIDI arguments decode as (port, status, data1, data2)
        if (
            isinstance(value, tuple)
            and len(value) == 4
            and all(isinstance(part, int) and not isinstance(part, bool) for part in value)
        ):
            return cls(ArgumentKind.MIDI, value)
        if isinstance(value, list):
            return cls(ArgumentKind.ARRAY, tuple(cls.from_wire(item) for item in value))
        return cls.from_json(value)

    # -------------------------------------------------------------------------
    # Encoders
    # -------------------------------------------------------------------------

    def to_json(self) -> Any:
        """JSON-serializable representation."""
        if self.kind == ArgumentKind.TIMESTAMP:
            return self.value.isoformat()
        if self.kind == ArgumentKind.BLOB:
            return base64.b64encode(self.value).decode("ascii")
        if self.kind == ArgumentKind.MIDI:
            return list(self.value)
        if self.kind == ArgumentKind.ARRAY:
            return [item.to_json() for item in self.value]
        return self.value

    def wire_arg(self) -> Tuple[Any, Any]:
        """
        Value and python-osc type tag for this argument.

        Floats go out as 64-bit doubles so JSON numbers keep their precision.
        ARRAY yields a list of values with a matching list of type tags,
        which python-osc writes between '[' and ']'.
        """
        kind = self.kind
        if kind == ArgumentKind.STRING:
            return self.value, OscMessageBuilder.ARG_TYPE_STRING
        if kind == ArgumentKind.INT:
            if INT32_MIN <= self.value <= INT32_MAX:
                return self.value, OscMessageBuilder.ARG_TYPE_INT
            return self.value, OscMessageBuilder.ARG_TYPE_INT64
        if kind == ArgumentKind.FLOAT:
            return float(self.value), OscMessageBuilder.ARG_TYPE_DOUBLE
        if kind == ArgumentKind.BOOL:
            arg_type = OscMessageBuilder.ARG_TYPE_TRUE if self.value else OscMessageBuilder.ARG_TYPE_FALSE
            return self.value, arg_type
        if kind == ArgumentKind.BLOB:
            return self.value, OscMessageBuilder.ARG_TYPE_BLOB
        if kind == ArgumentKind.NIL:
            return None, OscMessageBuilder.ARG_TYPE_NIL
        if kind == ArgumentKind.TIMESTAMP:
            return self.value.isoformat(), OscMessageBuilder.ARG_TYPE_STRING
        if kind == ArgumentKind.MIDI:
            return tuple(self.value), OscMessageBuilder.ARG_TYPE_MIDI
        if kind == ArgumentKind.ARRAY:
            pairs = [item.wire_arg() for item in self.value]
            return [value for value, _ in pairs], [arg_type for _, arg_type in pairs]
        raise PayloadError(f"Unknown argument kind {kind!r}")

    def add_to(self, builder: OscMessageBuilder) -> None:
        """Append this argument to a python-osc message builder."""
        value, arg_type = self.wire_arg()
        builder.add_arg(value, arg_type)


# =============================================================================
# LIST HELPERS
# =============================================================================

def to_arguments(values: Iterable[Any]) -> List[OscArgument]:
    """Wrap configured values (default payloads, scheduled payloads)."""
    return [OscArgument.from_value(value) for value in values]


def arguments_from_wire(params: Iterable[Any]) -> List[OscArgument]:
    return [OscArgument.from_wire(param) for param in params]


def arguments_to_json(arguments: Iterable[OscArgument]) -> List[Any]:
    return [argument.to_json() for argument in arguments]


def decode_arguments(payload: Union[bytes, str]) -> List[OscArgument]:
    """
    Decode an MQTT payload into an argument list.

    The payload must be a JSON array of scalars. An empty payload or JSON
    null decodes to an empty list.

    Raises:
        PayloadError: payload is not valid JSON or not an array of scalars
    """
    if not payload:
        return []
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError, RecursionError) as exc:
        raise PayloadError(f"Json Error: {exc}") from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise PayloadError(f"Json Error: expected an array of arguments, got {type(data).__name__}")
    return [OscArgument.from_json(value) for value in data]


def encode_arguments(arguments: Iterable[OscArgument]) -> str:
    return json.dumps(arguments_to_json(arguments))
