"""
Relay Engine

One Relay bridges one MQTT broker connection and one OSC peer/listener.
It owns the paho-mqtt client, the OscTransport and the subscription
scheduler. Inbound MQTT messages are routed by router.route(); inbound
OSC packets are published to MQTT.

Threads per relay:
- paho network loop (MQTT callbacks run here)
- OSC server receive loop (bidirectional mode only)
- one timer thread per scheduled subscription
"""

import logging
import threading
from typing import Any, Optional, Union

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion
from pythonosc.osc_bundle import OscBundle
from pythonosc.osc_message import OscMessage

from .arguments import PayloadError, arguments_to_json, encode_arguments
from .bundle import (
    ControlBundle,
    ControlMessage,
    Packet,
    encode_bundle,
    message_from_wire,
    to_portable,
)
from .models import LogLevel, RelayConfig
from .router import Effect, LogEffect, PublishStatusEffect, SendPacketEffect, route
from .scheduler import SubscriptionScheduler
from .transport import Address, OscTransport, TransportError, WirePacket

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
KEEPALIVE = 60

_LOGGING_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.RECEIVE: logging.INFO,
    LogLevel.SEND: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}


class BrokerConnectError(Exception):
    """The relay could not establish its MQTT connection."""


def _payload_text(payload: Union[bytes, str]) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8", "replace")
    return payload


class Relay:
    """
    Bridge between one MQTT namespace and one OSC endpoint.

    Example:
        relay = Relay(config)
        relay.start()   # raises BrokerConnectError / TransportError
        ...
        relay.stop()
    """

    def __init__(
        self,
        config: RelayConfig,
        mqtt_client: Optional[Any] = None,
        transport: Optional[OscTransport] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.config = config
        self.name = config.mqtt_topic
        self.connect_timeout = connect_timeout

        self._mqtt = mqtt_client
        self._transport = transport or OscTransport.from_config(config)
        self._transport.set_packet_handler(self.handle_osc_packet)
        self._scheduler = SubscriptionScheduler(config.osc_subscriptions, self.send, name=self.name)

        self._connected = threading.Event()
        self._connect_error: Optional[str] = None
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def transport(self) -> OscTransport:
        return self._transport

    @property
    def scheduler(self) -> SubscriptionScheduler:
        return self._scheduler

    def log(self, level: LogLevel, message: str) -> None:
        """Log if the relay's verbosity includes this level."""
        if level <= self.config.log_level:
            logger.log(_LOGGING_LEVELS[level], f"[{self.name}] {message}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Start the relay.

        Raises:
            TransportError: the OSC server socket could not be bound
            BrokerConnectError: MQTT connect failed or was refused
        """
        if self._started:
            return

        # Packets can arrive as soon as the socket is bound
        if self._mqtt is None:
            self._mqtt = self._create_mqtt_client()
        self._transport.start()
        try:
            self._connect_mqtt()
        except BrokerConnectError:
            self._transport.stop()
            raise

        self._scheduler.start()
        self._started = True
        self.send_status()

    def stop(self) -> None:
        """Stop timers, close the OSC socket and disconnect from MQTT."""
        self._scheduler.stop()
        self._transport.stop()
        if self._mqtt is not None and self._started:
            self._mqtt.disconnect()
            self._mqtt.loop_stop()
        self._started = False
        self.log(LogLevel.DEBUG, "Stopped")

    def _create_mqtt_client(self) -> mqtt.Client:
        client = mqtt.Client(
            CallbackAPIVersion.VERSION2,
            client_id=self.config.mqtt_client_id,
        )
        if self.config.mqtt_user:
            client.username_pw_set(self.config.mqtt_user, self.config.mqtt_password or None)
        return client

    def _connect_mqtt(self) -> None:
        client = self._mqtt
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._connected.clear()
        self._connect_error = None

        host, port = self.config.mqtt_host, self.config.mqtt_port
        self.log(LogLevel.DEBUG, f"Connecting to MQTT {host}:{port}")
        try:
            client.connect(host, port, keepalive=KEEPALIVE)
        except (OSError, ValueError) as exc:
            raise BrokerConnectError(f"MQTT error: {exc}") from exc

        client.loop_start()
        if not self._connected.wait(timeout=self.connect_timeout):
            client.loop_stop()
            raise BrokerConnectError(f"MQTT error: no CONNACK from {host}:{port}")
        if self._connect_error is not None:
            client.loop_stop()
            raise BrokerConnectError(f"MQTT error: {self._connect_error}")

    # -------------------------------------------------------------------------
    # MQTT callbacks (paho network thread)
    # -------------------------------------------------------------------------

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if getattr(reason_code, "is_failure", False):
            self._connect_error = str(reason_code)
            self._connected.set()
            return
        # Subscriptions are renewed on every (re)connect
        for topic in self.config.subscription_topics():
            self.subscribe(topic)
        self._connected.set()

    def _on_disconnect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        self.log(LogLevel.DEBUG, f"MQTT disconnected: {reason_code}")

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        self.handle_mqtt_message(message.topic, message.payload)

    def subscribe(self, topic: str) -> None:
        self.log(LogLevel.DEBUG, f"Subscribing MQTT: {topic}")
        result, _mid = self._mqtt.subscribe(topic, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self.log(LogLevel.ERROR, f"MQTT Subscribe Error: {mqtt.error_string(result)}")

    def publish(self, topic: str, payload: str) -> None:
        """Publish a retained message."""
        info = self._mqtt.publish(topic, payload, qos=0, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.log(LogLevel.ERROR, f"MQTT Publish Error on {topic}: {mqtt.error_string(info.rc)}")
            return
        self.log(LogLevel.SEND, f"-> [MQTT] {topic}: {payload}")

    def send_status(self) -> None:
        """Publish the configuration snapshot to <namespace>/status."""
        if self.config.mqtt_disable_config_send:
            return
        self.publish(self.config.topic("status"), self.config.status_json())

    # -------------------------------------------------------------------------
    # MQTT -> OSC
    # -------------------------------------------------------------------------

    def handle_mqtt_message(self, topic: str, payload: Union[bytes, str]) -> None:
        self.log(LogLevel.RECEIVE, f"<- [MQTT] {topic}: {_payload_text(payload)}")
        for effect in route(self.config, topic, payload):
            self._execute(effect)

    def _execute(self, effect: Effect) -> None:
        if isinstance(effect, SendPacketEffect):
            try:
                self.send(effect.packet)
            except TransportError as exc:
                self.log(LogLevel.ERROR, f"Send Error: {exc}")
        elif isinstance(effect, PublishStatusEffect):
            self.send_status()
        elif isinstance(effect, LogEffect):
            self.log(effect.level, effect.message)

    def send(self, packet: Optional[Packet]) -> None:
        """
        Send a packet to the OSC peer.

        Raises:
            TransportError: resolve, encode or write failed
        """
        if packet is None:
            return
        if isinstance(packet, ControlBundle):
            self.log(LogLevel.SEND, f"-> [OSC] Bundle {packet.timetag}")
        elif isinstance(packet, ControlMessage):
            self.log(LogLevel.SEND, f"-> [OSC] {packet.address}: {arguments_to_json(packet.arguments)}")
        data = self._transport.send(packet)
        if data is not None and self.config.log_level >= LogLevel.DEBUG:
            binary = data.replace(b"\x00", b"~").decode("ascii", "replace")
            self.log(LogLevel.DEBUG, f"-> [OSC] Binary {binary}")

    # -------------------------------------------------------------------------
    # OSC -> MQTT (OSC server thread)
    # -------------------------------------------------------------------------

    def handle_osc_packet(self, packet: WirePacket, client_address: Optional[Address] = None) -> None:
        """Publish a received OSC packet to MQTT according to its kind."""
        if isinstance(packet, OscMessage):
            self._publish_message(packet)
        elif isinstance(packet, OscBundle):
            self._publish_bundle(packet)
        else:
            self.log(LogLevel.ERROR, "Unknown OSC packet received.")

    def _publish_message(self, packet: OscMessage) -> None:
        try:
            message = message_from_wire(packet)
            payload = encode_arguments(message.arguments)
        except (PayloadError, RecursionError) as exc:
            self.log(LogLevel.ERROR, f"OSC Decode Error: {exc}")
            return
        self.log(LogLevel.RECEIVE, f"<- [OSC] {message.address}: {payload}")
        self.publish(self.config.topic("cmd") + message.address, payload)

    def _publish_bundle(self, packet: OscBundle) -> None:
        try:
            bundle = to_portable(packet)
            payload = encode_bundle(bundle)
        except PayloadError as exc:
            self.log(LogLevel.ERROR, f"OSC Decode Error: {exc}")
            return
        self.log(LogLevel.RECEIVE, f"<- [OSC] Bundle {bundle.timetag}")
        self.publish(self.config.topic("bundle"), payload)
