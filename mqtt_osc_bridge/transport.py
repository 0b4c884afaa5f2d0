"""
Bidirectional OSC Transport

One UDP socket per relay. When a bind address is configured, python-osc
serves on that socket and every outgoing datagram is written through the
very same socket, so the peer sees requests and replies on one address.
python-osc's client and server are otherwise independent endpoints, which
is why sends do not use udp_client here.

Without a bind address the transport is send-only: each send opens an
ephemeral UDP socket, writes once and closes it.
"""

import logging
import socket
import threading
from contextlib import closing
from typing import Any, Callable, List, Optional, Tuple, Union

from pythonosc import dispatcher, osc_server
from pythonosc.osc_bundle import OscBundle
from pythonosc.osc_bundle import ParseError as BundleParseError
from pythonosc.osc_bundle_builder import BuildError as BundleBuildError
from pythonosc.osc_message import OscMessage
from pythonosc.osc_message import ParseError as MessageParseError
from pythonosc.osc_message_builder import BuildError as MessageBuildError

from .bundle import Packet, encode_packet
from .models import RelayConfig

logger = logging.getLogger(__name__)

Address = Tuple[Any, ...]
WirePacket = Union[OscMessage, OscBundle, bytes]
PacketHandler = Callable[[WirePacket, Address], None]

SERVER_STOP_TIMEOUT = 2.0


class TransportError(Exception):
    """Resolving, encoding, binding or writing failed."""


def parse_datagram(data: bytes) -> WirePacket:
    """
    Classify a datagram by packet kind.

    Returns an OscBundle, an OscMessage, or the raw bytes when the datagram
    is neither.

    Raises:
        BundleParseError / MessageParseError: malformed packet
    """
    if OscBundle.dgram_is_bundle(data):
        return OscBundle(data)
    if OscMessage.dgram_is_message(data):
        return OscMessage(data)
    return data


class _PacketDispatcher(dispatcher.Dispatcher):
    """Hands whole packets to one handler instead of per-address handlers."""

    def __init__(self, on_packet: PacketHandler):
        super().__init__()
        self._on_packet = on_packet

    def call_handlers_for_packet(self, data: bytes, client_address: Address) -> List[Any]:
        try:
            packet = parse_datagram(data)
        except (BundleParseError, MessageParseError, RecursionError) as exc:
            logger.error(f"Malformed OSC packet from {client_address}: {exc}")
            return []
        self._on_packet(packet, client_address)
        return []


class _OscServer(osc_server.BlockingOSCUDPServer):
    """Single-threaded server that also passes packets of unknown kind through."""

    # A second relay binding the same port must fail, not share it
    allow_reuse_address = False

    def verify_request(self, request: Any, client_address: Address) -> bool:
        return True


class OscTransport:
    """
    Owns the relay's OSC socket.

    Example:
        transport = OscTransport("10.0.0.5", 10023, "10.0.0.2", 10023, on_packet=handler)
        transport.start()
        transport.send(ControlMessage("/xremote"))
        transport.stop()
    """

    def __init__(
        self,
        host: str = "",
        port: int = 0,
        bind_addr: str = "",
        bind_port: int = 0,
        on_packet: Optional[PacketHandler] = None,
        name: str = "osc",
    ):
        self.host = host
        self.port = port
        self.bind_addr = bind_addr
        self.bind_port = bind_port
        self.name = name
        self._on_packet = on_packet

        self._server: Optional[_OscServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._server_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RelayConfig, on_packet: Optional[PacketHandler] = None) -> "OscTransport":
        return cls(
            host=config.osc_host,
            port=config.osc_port,
            bind_addr=config.osc_bind_addr,
            bind_port=config.osc_bind_port,
            on_packet=on_packet,
            name=config.mqtt_topic,
        )

    @property
    def wants_server(self) -> bool:
        return bool(self.bind_addr and self.bind_port)

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    @property
    def server_address(self) -> Optional[Address]:
        server = self._server
        return server.server_address if server is not None else None

    def set_packet_handler(self, on_packet: PacketHandler) -> None:
        self._on_packet = on_packet

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Bind the server socket when a bind address is configured.

        Raises:
            TransportError: the socket could not be bound
        """
        with self._server_lock:
            if self._server is not None or not self.wants_server:
                return
            try:
                server = _OscServer(
                    (self.bind_addr, self.bind_port),
                    _PacketDispatcher(self._handle_packet),
                )
            except OSError as exc:
                raise TransportError(
                    f"OSC bind {self.bind_addr}:{self.bind_port} failed: {exc}"
                ) from exc

            self._server = server
            self._server_thread = threading.Thread(
                target=server.serve_forever,
                name=f"OscServer[{self.name}]",
                daemon=True,
            )
            self._server_thread.start()
            logger.info(f"[{self.name}] OSC server on {self.bind_addr}:{self.bind_port}")

    def stop(self) -> None:
        """Stop serving and close the shared socket."""
        with self._server_lock:
            server = self._server
            thread = self._server_thread
            self._server = None
            self._server_thread = None

        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=SERVER_STOP_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"[{self.name}] OSC server stop timed out")
        logger.info(f"[{self.name}] OSC server stopped")

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def resolve(self, family: int = socket.AF_UNSPEC) -> Tuple[int, Address]:
        """Resolve the peer (DNS name or literal) to a socket address."""
        if not self.host or not self.port:
            raise TransportError("No OSC host configured")
        try:
            infos = socket.getaddrinfo(self.host, self.port, family, socket.SOCK_DGRAM)
        except OSError as exc:
            raise TransportError(f"Resolve {self.host}:{self.port} failed: {exc}") from exc
        if not infos:
            raise TransportError(f"Resolve {self.host}:{self.port} returned nothing")
        resolved_family, _, _, _, address = infos[0]
        return resolved_family, address

    def send(self, packet: Optional[Packet]) -> Optional[bytes]:
        """
        Encode and write a packet to the peer.

        A None packet is ignored. Returns the datagram written.

        Raises:
            TransportError: resolve, encode or write failed
        """
        if packet is None:
            return None

        server = self._server
        if server is not None:
            family, address = self.resolve(server.socket.family)
        else:
            family, address = self.resolve()

        try:
            data = encode_packet(packet)
        except (MessageBuildError, BundleBuildError, ValueError, RecursionError) as exc:
            raise TransportError(f"Encode failed: {exc}") from exc

        try:
            if server is not None:
                server.socket.sendto(data, address)
            else:
                with closing(socket.socket(family, socket.SOCK_DGRAM)) as sock:
                    sock.connect(address)
                    sock.send(data)
        except OSError as exc:
            raise TransportError(f"Write to {self.host}:{self.port} failed: {exc}") from exc
        return data

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    def _handle_packet(self, packet: WirePacket, client_address: Address) -> None:
        handler = self._on_packet
        if handler is None:
            return
        try:
            handler(packet, client_address)
        except Exception as exc:
            logger.exception(f"[{self.name}] OSC packet handler error: {exc}")
