"""
Bundle Codec

Pure translation between python-osc wire packets and the portable
ControlMessage / ControlBundle structures published to MQTT as JSON.

Bundles nest arbitrarily; every function here recurses into child
bundles and preserves message and bundle order. Nothing here performs
I/O or mutates its input.
"""

import json
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pythonosc.osc_bundle import OscBundle
from pythonosc.osc_bundle_builder import IMMEDIATELY, OscBundleBuilder
from pythonosc.osc_message import OscMessage
from pythonosc.osc_message_builder import OscMessageBuilder

from .arguments import (
    OscArgument,
    PayloadError,
    arguments_from_wire,
    arguments_to_json,
)

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")

# Bundle datagrams start with b"#bundle\x00" followed by the NTP timetag
_TIMETAG_OFFSET = 8
_NTP_IMMEDIATELY = struct.pack(">II", 0, 1)
_NTP_EPOCH = datetime(1900, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# PORTABLE STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class ControlMessage:
    """
    OSC message independent of its wire encoding.

    Attributes:
        address: OSC address (e.g., "/ch/1/mute")
        arguments: Ordered tagged arguments
    """
    address: str
    arguments: Tuple[OscArgument, ...] = ()

    def __str__(self) -> str:
        args_str = " ".join(str(a) for a in self.arguments)
        return f"{self.address} {args_str}".strip()


@dataclass(frozen=True)
class ControlBundle:
    """
    OSC bundle independent of its wire encoding.

    Attributes:
        timetag: When the bundle applies; None means "immediately"
        messages: Child messages, in order
        bundles: Child bundles, in order
    """
    timetag: Optional[datetime] = None
    messages: Tuple[ControlMessage, ...] = ()
    bundles: Tuple["ControlBundle", ...] = ()


Packet = Union[ControlMessage, ControlBundle]


# =============================================================================
# TIMETAGS
# =============================================================================

def _timetag_from_wire(bundle: OscBundle) -> Optional[datetime]:
    # Read the NTP timetag from the datagram; OscBundle.timestamp goes
    # through naive local time and drops the fraction.
    raw = bundle.dgram[_TIMETAG_OFFSET:_TIMETAG_OFFSET + 8]
    if raw == _NTP_IMMEDIATELY:
        return None
    seconds, fraction = struct.unpack(">II", raw)
    return _NTP_EPOCH + timedelta(seconds=seconds + fraction / 2 ** 32)


def _timetag_to_wire(timetag: Optional[datetime]) -> float:
    if timetag is None:
        return IMMEDIATELY
    if timetag.tzinfo is None:
        timetag = timetag.replace(tzinfo=timezone.utc)
    return timetag.timestamp()


def _timetag_to_json(timetag: Optional[datetime]) -> Optional[str]:
    return timetag.isoformat() if timetag is not None else None


def _timetag_from_json(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise PayloadError(f"Invalid timetag {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if not isinstance(value, str):
        raise PayloadError(f"Invalid timetag {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # datetime only keeps microseconds
    text = _FRACTION_RE.sub(r".\1", text)
    try:
        stamp = datetime.fromisoformat(text)
    except ValueError as exc:
        raise PayloadError(f"Invalid timetag {value!r}") from exc
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


# =============================================================================
# WIRE <-> PORTABLE
# =============================================================================

def message_from_wire(message: OscMessage) -> ControlMessage:
    return ControlMessage(
        address=message.address,
        arguments=tuple(arguments_from_wire(message.params)),
    )


def message_to_wire(message: ControlMessage) -> OscMessage:
    builder = OscMessageBuilder(address=message.address)
    for argument in message.arguments:
        argument.add_to(builder)
    return builder.build()


def to_portable(bundle: OscBundle) -> ControlBundle:
    """Convert a received wire bundle, recursing into child bundles."""
    try:
        return _to_portable(bundle)
    except RecursionError as exc:
        raise PayloadError("Bundle nested too deeply") from exc


def _to_portable(bundle: OscBundle) -> ControlBundle:
    messages: List[ControlMessage] = []
    bundles: List[ControlBundle] = []
    for content in bundle:
        if isinstance(content, OscBundle):
            bundles.append(_to_portable(content))
        elif isinstance(content, OscMessage):
            messages.append(message_from_wire(content))
        else:
            raise PayloadError(f"Unknown bundle content {type(content).__name__}")
    return ControlBundle(
        timetag=_timetag_from_wire(bundle),
        messages=tuple(messages),
        bundles=tuple(bundles),
    )


def to_wire(bundle: ControlBundle) -> OscBundle:
    """Build a wire bundle: child messages first, then child bundles."""
    builder = OscBundleBuilder(_timetag_to_wire(bundle.timetag))
    for message in bundle.messages:
        builder.add_content(message_to_wire(message))
    for child in bundle.bundles:
        builder.add_content(to_wire(child))
    return builder.build()


def encode_packet(packet: Packet) -> bytes:
    """Wire bytes for a message or bundle."""
    if isinstance(packet, ControlBundle):
        try:
            return to_wire(packet).dgram
        except RecursionError as exc:
            raise PayloadError("Bundle nested too deeply") from exc
    if isinstance(packet, ControlMessage):
        return message_to_wire(packet).dgram
    raise PayloadError(f"Unknown packet type {type(packet).__name__}")


# =============================================================================
# PORTABLE <-> JSON
# =============================================================================

def message_to_json(message: ControlMessage) -> Dict[str, Any]:
    return {
        "address": message.address,
        "arguments": arguments_to_json(message.arguments),
    }


def message_from_json(data: Any) -> ControlMessage:
    if not isinstance(data, dict):
        raise PayloadError(f"Bundle message must be an object, got {type(data).__name__}")
    address = data.get("address")
    if not isinstance(address, str):
        raise PayloadError("Bundle message needs a string address")
    arguments = data.get("arguments") or []
    if not isinstance(arguments, list):
        raise PayloadError("Bundle message arguments must be an array")
    return ControlMessage(
        address=address,
        arguments=tuple(OscArgument.from_json(value) for value in arguments),
    )


def bundle_to_json(bundle: ControlBundle) -> Dict[str, Any]:
    return {
        "timetag": _timetag_to_json(bundle.timetag),
        "messages": [message_to_json(message) for message in bundle.messages],
        "bundles": [bundle_to_json(child) for child in bundle.bundles],
    }


def bundle_from_json(data: Any) -> ControlBundle:
    """
    Build a ControlBundle from its JSON mirror.

    Missing or null messages/bundles decode as empty; a missing or null
    timetag means "immediately".

    Raises:
        PayloadError: data does not have the bundle shape
    """
    if not isinstance(data, dict):
        raise PayloadError(f"Bundle must be an object, got {type(data).__name__}")
    messages = data.get("messages") or []
    bundles = data.get("bundles") or []
    if not isinstance(messages, list) or not isinstance(bundles, list):
        raise PayloadError("Bundle messages and bundles must be arrays")
    return ControlBundle(
        timetag=_timetag_from_json(data.get("timetag")),
        messages=tuple(message_from_json(message) for message in messages),
        bundles=tuple(bundle_from_json(child) for child in bundles),
    )


def decode_bundle(payload: Union[bytes, str]) -> ControlBundle:
    """Decode an MQTT bundle payload."""
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError, RecursionError) as exc:
        raise PayloadError(f"Json Error: {exc}") from exc
    try:
        return bundle_from_json(data)
    except RecursionError as exc:
        raise PayloadError("Bundle nested too deeply") from exc


def encode_bundle(bundle: ControlBundle) -> str:
    try:
        return json.dumps(bundle_to_json(bundle))
    except RecursionError as exc:
        raise PayloadError("Bundle nested too deeply") from exc
