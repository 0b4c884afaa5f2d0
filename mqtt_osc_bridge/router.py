"""
Topic Router - Pure Functions

Decides what an inbound MQTT message means for a relay. Nothing here
touches the network: route() returns a list of effects which the relay
engine executes.

Decision order:
1. Every CommandMapping whose topic matches fires (all are evaluated).
2. Only when no mapping matched, the generic topics are checked in order:
   <namespace>/send[/<address>], <namespace>/bundle/send,
   <namespace>/status/check. At most one of these fires.
"""

from dataclasses import dataclass
from typing import List, Union

from .arguments import PayloadError, decode_arguments
from .bundle import ControlMessage, Packet, decode_bundle
from .models import CommandMapping, LogLevel, RelayConfig

ARBITRARY_DISABLED = "Arbritary commands are disabled on this relay."


# =============================================================================
# EFFECTS (Side effect descriptions for the relay engine)
# =============================================================================

@dataclass(frozen=True)
class Effect:
    """Base class for side effects."""
    pass


@dataclass(frozen=True)
class SendPacketEffect(Effect):
    """Effect: Send an OSC message or bundle to the peer."""
    packet: Packet


@dataclass(frozen=True)
class PublishStatusEffect(Effect):
    """Effect: Publish the configuration snapshot."""
    pass


@dataclass(frozen=True)
class LogEffect(Effect):
    """Effect: Log a message at a relay verbosity level."""
    message: str
    level: LogLevel = LogLevel.ERROR


# =============================================================================
# ROUTING
# =============================================================================

def route(config: RelayConfig, topic: str, payload: Union[bytes, str]) -> List[Effect]:
    """Evaluate one MQTT message against the relay configuration."""
    effects: List[Effect] = []
    matched = False
    for mapping in config.commands:
        if mapping.matches(config.namespace, topic):
            matched = True
            effects.extend(route_mapping(mapping, payload))
    if matched:
        return effects

    send_topic = config.topic("send")
    if topic == send_topic or topic.startswith(send_topic + "/"):
        return route_send(config, topic[len(send_topic):], payload)
    if topic == config.topic("bundle/send"):
        return route_bundle(config, payload)
    if topic == config.topic("status/check"):
        return [PublishStatusEffect()]
    return [LogEffect(f"No route for MQTT topic {topic}", LogLevel.DEBUG)]


def route_mapping(mapping: CommandMapping, payload: Union[bytes, str]) -> List[Effect]:
    """Build the message for one matching CommandMapping."""
    if not mapping.disallow_payload and payload:
        try:
            arguments = decode_arguments(payload)
        except PayloadError as exc:
            return [LogEffect(str(exc))]
    else:
        arguments = mapping.default_arguments
    message = ControlMessage(mapping.command, tuple(arguments))
    return [SendPacketEffect(message)]


def route_send(config: RelayConfig, address: str, payload: Union[bytes, str]) -> List[Effect]:
    """Forward <namespace>/send/<address> as an arbitrary OSC message."""
    if config.osc_disallow_arbritary_command:
        return [LogEffect(ARBITRARY_DISABLED)]
    try:
        arguments = decode_arguments(payload)
    except PayloadError as exc:
        return [LogEffect(str(exc))]
    return [SendPacketEffect(ControlMessage(address or "/", tuple(arguments)))]


def route_bundle(config: RelayConfig, payload: Union[bytes, str]) -> List[Effect]:
    """Forward a JSON bundle from <namespace>/bundle/send."""
    if config.osc_disallow_arbritary_command:
        return [LogEffect(ARBITRARY_DISABLED)]
    try:
        bundle = decode_bundle(payload)
    except PayloadError as exc:
        return [LogEffect(str(exc))]
    return [SendPacketEffect(bundle)]
