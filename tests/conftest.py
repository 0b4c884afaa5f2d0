"""
Shared fixtures for mqtt_osc_bridge tests.

The MQTT broker is replaced by FakeMqttClient; OSC traffic uses real
loopback UDP sockets on free ports.
"""

import socket
import threading
import time
from contextlib import closing
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest

from mqtt_osc_bridge.models import RelayConfig
from mqtt_osc_bridge.transport import OscTransport


def find_free_udp_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_DGRAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeReasonCode:
    def __init__(self, name: str = "Success", is_failure: bool = False):
        self.name = name
        self.is_failure = is_failure

    def __str__(self) -> str:
        return self.name


class FakeMqttClient:
    """In-memory stand-in for paho.mqtt.client.Client."""

    def __init__(self, reason_code: Optional[FakeReasonCode] = None, auto_connack: bool = True):
        self.reason_code = reason_code or FakeReasonCode()
        self.auto_connack = auto_connack
        self.connect_error: Optional[Exception] = None

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

        self.connected_to: Optional[Tuple[str, int]] = None
        self.loop_running = False
        self.disconnected = False
        self.subscribed: List[str] = []
        self.published: List[Tuple[str, Any, bool]] = []
        self._lock = threading.Lock()

    def connect(self, host: str, port: int, keepalive: int = 60) -> int:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_to = (host, port)
        return 0

    def loop_start(self) -> int:
        self.loop_running = True
        if self.auto_connack and self.on_connect is not None:
            self.on_connect(self, None, {}, self.reason_code, None)
        return 0

    def loop_stop(self) -> int:
        self.loop_running = False
        return 0

    def disconnect(self) -> int:
        self.disconnected = True
        return 0

    def subscribe(self, topic: str, qos: int = 0) -> Tuple[int, int]:
        self.subscribed.append(topic)
        return 0, len(self.subscribed)

    def publish(self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False):
        with self._lock:
            self.published.append((topic, payload, retain))
        return SimpleNamespace(rc=0, mid=len(self.published))

    def deliver(self, topic: str, payload: bytes = b"") -> None:
        """Simulate the broker delivering a message."""
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def published_on(self, topic: str) -> List[Any]:
        with self._lock:
            return [payload for t, payload, _ in self.published if t == topic]


class RecordingTransport(OscTransport):
    """OscTransport that records packets instead of writing them."""

    def __init__(self, fail_with: Optional[Exception] = None, **kwargs):
        super().__init__(**kwargs)
        self.sent: List[Any] = []
        self.started = False
        self.fail_with = fail_with

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def send(self, packet):
        if packet is None:
            return None
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(packet)
        return b""


class UdpPeer:
    """Loopback UDP socket playing the OSC device."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(2.0)

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    def receive(self) -> Tuple[bytes, Tuple[str, int]]:
        return self.sock.recvfrom(65535)

    def send_to(self, data: bytes, port: int) -> None:
        self.sock.sendto(data, ("127.0.0.1", port))

    def close(self) -> None:
        self.sock.close()


@pytest.fixture
def relay_data() -> Dict[str, Any]:
    """Raw configuration for a client-only relay on namespace osc/test."""
    return {
        "mqtt_host": "broker.local",
        "mqtt_port": 1883,
        "mqtt_client_id": "bridge-test",
        "mqtt_topic": "osc/test",
        "osc_host": "127.0.0.1",
        "osc_port": 10023,
        "relay_commands": [
            {"command": "/ch/1/mute", "mqtt_sub_topic": "mute", "default_payload": [0]},
        ],
    }


@pytest.fixture
def relay_config(relay_data) -> RelayConfig:
    return RelayConfig.model_validate(relay_data)


@pytest.fixture
def mqtt_client() -> FakeMqttClient:
    return FakeMqttClient()


@pytest.fixture
def recording_transport() -> RecordingTransport:
    return RecordingTransport(host="127.0.0.1", port=10023, name="osc/test")


@pytest.fixture
def udp_peer():
    peer = UdpPeer()
    yield peer
    peer.close()
