"""
Configuration Loading and Validation

Finds the YAML configuration file, parses it and validates the relay
list. Any problem is a ConfigError; the bridge does not start with a
partially valid configuration.
"""

import logging
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import yaml
from pydantic import ValidationError

from .models import BridgeConfig, RelayConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "mqtt-osc-bridge" / CONFIG_FILE_NAME
SYSTEM_CONFIG_PATH = Path("/etc/mqtt-osc-bridge") / CONFIG_FILE_NAME

RelayDraft = Union[RelayConfig, Mapping[str, Any]]


class ConfigError(Exception):
    """Configuration is missing, unreadable or invalid."""


def candidate_paths(explicit: Optional[Union[str, Path]] = None) -> List[Path]:
    """Config locations in order of preference."""
    paths = []
    if explicit:
        paths.append(Path(explicit).expanduser())
    paths.extend([
        Path.cwd() / CONFIG_FILE_NAME,
        USER_CONFIG_PATH,
        SYSTEM_CONFIG_PATH,
    ])
    return paths


def find_config_file(explicit: Optional[Union[str, Path]] = None) -> Path:
    """
    Pick the configuration file to use.

    An explicit path wins when it exists, then ./config.yaml,
    ~/.config/mqtt-osc-bridge/config.yaml and /etc/mqtt-osc-bridge/config.yaml.

    Raises:
        ConfigError: none of the candidates exist
    """
    for path in candidate_paths(explicit):
        if path.is_file():
            return path
    raise ConfigError("Unable to find a configuration file.")


def _relay_error(index: int, message: str) -> ConfigError:
    return ConfigError(f"Relay {index}: {message}")


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def validate_relays(drafts: Sequence[RelayDraft]) -> List[RelayConfig]:
    """
    Validate relay drafts and return immutable RelayConfigs.

    Per relay: MQTT host/port and topic are required, and either a bind
    address or an OSC host must be given. A bind address without a bind
    port binds on the OSC port. Across relays: MQTT topics and bind ports
    must be unique.

    Raises:
        ConfigError: first violation found, naming the relay index
    """
    if not drafts:
        raise ConfigError("No relays defined in the configuration file.")

    relays: List[RelayConfig] = []
    for index, draft in enumerate(drafts):
        try:
            relay = draft if isinstance(draft, RelayConfig) else RelayConfig.model_validate(draft)
        except ValidationError as exc:
            raise _relay_error(index, _format_validation_error(exc)) from exc
        if relay.osc_bind_addr and not relay.osc_bind_port:
            relay = relay.model_copy(update={"osc_bind_port": relay.osc_port})
        relays.append(relay)

    for index, relay in enumerate(relays):
        if not relay.mqtt_host or not relay.mqtt_port:
            raise _relay_error(index, "MQTT host and port are required configurations.")
        if not relay.mqtt_topic:
            raise _relay_error(index, "MQTT topic is a required configuration.")
        if not relay.osc_bind_addr and not relay.osc_host:
            raise _relay_error(
                index,
                "You must define either a bind address or an OSC host in the configuration.",
            )
        for other_index, other in enumerate(relays):
            if other_index == index:
                continue
            if relay.mqtt_topic == other.mqtt_topic:
                raise _relay_error(index, "MQTT topic cannot exist on 2 different relays.")
            if relay.has_server and other.has_server and relay.osc_bind_port == other.osc_bind_port:
                raise _relay_error(index, "Cannot use the same OSC bind port on 2 different relays.")

    return relays


def parse_config(data: Any) -> List[RelayConfig]:
    """Validate an already-parsed configuration document."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must be a mapping with a 'relays' list.")
    relays = data.get("relays") or []
    if not isinstance(relays, Iterable) or isinstance(relays, (str, bytes, Mapping)):
        raise ConfigError("'relays' must be a list.")
    return validate_relays(list(relays))


def load_config(path: Union[str, Path]) -> BridgeConfig:
    """
    Load and validate a YAML configuration file.

    Raises:
        ConfigError: the file cannot be read, parsed or validated
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Error reading YAML file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error parsing YAML file: {exc}") from exc

    config = BridgeConfig(relays=tuple(parse_config(data)))
    logger.info(f"Loaded {len(config.relays)} relays from {path}")
    return config
