"""
MQTT OSC Bridge

Bridges MQTT topics and OSC (Open Sound Control) devices. Each configured
relay connects one MQTT namespace to one OSC peer, translating messages
and nested bundles in both directions.

Usage:
    from mqtt_osc_bridge import Relay, load_config

    config = load_config("config.yaml")
    relays = [Relay(relay_config) for relay_config in config.relays]
    for relay in relays:
        relay.start()
"""

__version__ = "0.1.0"

SERVICE_NAME = "mqtt-osc-bridge"
SERVICE_DESCRIPTION = "Bridges MQTT messages to OSC"

from .arguments import ArgumentKind, OscArgument, PayloadError
from .bundle import ControlBundle, ControlMessage, to_portable, to_wire
from .config import ConfigError, find_config_file, load_config, validate_relays
from .models import BridgeConfig, CommandMapping, LogLevel, RelayConfig, ScheduledPush
from .relay import BrokerConnectError, Relay
from .router import route
from .scheduler import SubscriptionScheduler
from .transport import OscTransport, TransportError

__all__ = [
    # Arguments
    "ArgumentKind",
    "OscArgument",
    "PayloadError",
    # Bundles
    "ControlBundle",
    "ControlMessage",
    "to_portable",
    "to_wire",
    # Config
    "BridgeConfig",
    "CommandMapping",
    "ConfigError",
    "LogLevel",
    "RelayConfig",
    "ScheduledPush",
    "find_config_file",
    "load_config",
    "validate_relays",
    # Runtime
    "BrokerConnectError",
    "OscTransport",
    "Relay",
    "SubscriptionScheduler",
    "TransportError",
    "route",
]
