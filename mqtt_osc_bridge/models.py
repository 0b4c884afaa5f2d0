"""
Relay Configuration Models

Immutable pydantic models for everything a relay is configured with.
Field names match the YAML configuration file; the status snapshot
published to MQTT is produced from the same models.
"""

import re
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, List, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    field_serializer,
    field_validator,
    model_validator,
)

from .arguments import OscArgument, to_arguments

# Scalars allowed in configured payloads
Scalar = Union[StrictBool, StrictInt, StrictFloat, datetime, str, None]

_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> timedelta:
    """
    Parse an interval.

    Accepts timedelta, numbers (seconds), numeric strings (seconds) and
    Go-style duration strings such as "500ms", "5s" or "1m30s".
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return timedelta(seconds=float(text))
        except ValueError:
            pass
        if not _DURATION_RE.fullmatch(text):
            raise ValueError(f"invalid duration {value!r}")
        seconds = sum(
            float(amount) * _DURATION_UNITS[unit]
            for amount, unit in _DURATION_PART_RE.findall(text)
        )
        return timedelta(seconds=seconds)
    raise ValueError(f"invalid duration {value!r}")


def _none_as_empty(value: Any) -> Any:
    return () if value is None else value


class LogLevel(IntEnum):
    """How much a relay logs. Each level includes the ones below it."""
    ERROR = 0
    RECEIVE = 1
    SEND = 2
    DEBUG = 3

    def __str__(self) -> str:
        return self.name.capitalize()


class CommandMapping(BaseModel):
    """
    Pre-defined command relayed from an MQTT topic to an OSC address.

    Attributes:
        command: OSC address to send
        mqtt_topic: Absolute MQTT topic to subscribe
        mqtt_sub_topic: Topic under the relay namespace (<namespace>/<sub>)
        disallow_payload: Ignore incoming payloads and always send the default
        default_payload: Arguments used when no payload is given or allowed
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    command: str
    mqtt_topic: str = ""
    mqtt_sub_topic: str = ""
    disallow_payload: bool = False
    default_payload: Tuple[Scalar, ...] = ()

    @field_validator("default_payload", mode="before")
    @classmethod
    def empty_default_payload(cls, value: Any) -> Any:
        return _none_as_empty(value)

    @model_validator(mode="after")
    def require_topic(self) -> "CommandMapping":
        if not self.mqtt_topic and not self.mqtt_sub_topic:
            raise ValueError(f"command {self.command!r} needs mqtt_topic or mqtt_sub_topic")
        return self

    @property
    def default_arguments(self) -> List[OscArgument]:
        return to_arguments(self.default_payload)

    def topics(self, namespace: str) -> List[str]:
        """MQTT topics this mapping listens on."""
        topics = []
        if self.mqtt_topic:
            topics.append(self.mqtt_topic)
        if self.mqtt_sub_topic:
            topics.append(f"{namespace}/{self.mqtt_sub_topic}")
        return topics

    def matches(self, namespace: str, topic: str) -> bool:
        return topic in self.topics(namespace)


class ScheduledPush(BaseModel):
    """OSC command sent at a fixed interval (for servers offering data subscriptions)."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    command: str
    payload: Tuple[Scalar, ...] = ()
    interval: timedelta

    @field_validator("payload", mode="before")
    @classmethod
    def empty_payload(cls, value: Any) -> Any:
        return _none_as_empty(value)

    @field_validator("interval", mode="before")
    @classmethod
    def parse_interval(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("interval")
    @classmethod
    def positive_interval(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("interval must be greater than zero")
        return value

    @field_serializer("interval")
    def serialize_interval(self, value: timedelta) -> float:
        return value.total_seconds()

    @property
    def arguments(self) -> List[OscArgument]:
        return to_arguments(self.payload)


class RelayConfig(BaseModel):
    """
    Configuration of a single relay.

    Setting mqtt_topic to `osc/example` sets up these topics:
        osc/example/cmd/$OSC_CMD  - OSC messages received are published here
        osc/example/send/$OSC_CMD - Messages pushed here are forwarded to OSC
        osc/example/bundle        - OSC bundles received
        osc/example/bundle/send   - Bundles pushed here are forwarded to OSC
        osc/example/status        - Configuration snapshot
        osc/example/status/check  - Request a configuration snapshot

    Bidirectional mode needs osc_bind_addr, osc_host and osc_port. The bind
    address must be a unicast address, not 0.0.0.0.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    mqtt_host: str = ""
    mqtt_port: int = 0
    mqtt_client_id: str = ""
    mqtt_user: str = ""
    mqtt_password: str = Field(default="", exclude=True)
    mqtt_topic: str = ""
    mqtt_disable_config_send: bool = False

    osc_host: str = ""
    osc_port: int = 0
    osc_bind_addr: str = ""
    osc_bind_port: int = 0
    osc_disallow_arbritary_command: bool = False

    commands: Tuple[CommandMapping, ...] = Field(
        default=(),
        validation_alias=AliasChoices("relay_commands", "commands"),
    )
    osc_subscriptions: Tuple[ScheduledPush, ...] = ()

    log_level: LogLevel = LogLevel.ERROR

    @field_validator("commands", "osc_subscriptions", mode="before")
    @classmethod
    def empty_lists(cls, value: Any) -> Any:
        return _none_as_empty(value)

    @property
    def namespace(self) -> str:
        return self.mqtt_topic

    @property
    def has_server(self) -> bool:
        """True when a local OSC server socket is bound."""
        return bool(self.osc_bind_addr and self.osc_bind_port)

    @property
    def has_peer(self) -> bool:
        return bool(self.osc_host and self.osc_port)

    @property
    def bidirectional(self) -> bool:
        return self.has_server and self.has_peer

    def topic(self, suffix: str) -> str:
        return f"{self.mqtt_topic}/{suffix}"

    def subscription_topics(self) -> List[str]:
        """Every MQTT topic the relay subscribes to, in subscription order."""
        topics = [
            self.topic("send/#"),
            self.topic("bundle/send"),
            self.topic("status/check"),
        ]
        for mapping in self.commands:
            topics.extend(mapping.topics(self.mqtt_topic))
        return topics

    def status_json(self) -> str:
        """Configuration snapshot published on <namespace>/status."""
        return self.model_dump_json()


class BridgeConfig(BaseModel):
    """Top level of the configuration file."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    relays: Tuple[RelayConfig, ...] = ()

    @field_validator("relays", mode="before")
    @classmethod
    def empty_relays(cls, value: Any) -> Any:
        return _none_as_empty(value)

