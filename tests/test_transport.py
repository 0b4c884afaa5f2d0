"""
Tests for the OSC transport over loopback UDP.
"""

import struct
import threading

import pytest
from pythonosc.osc_bundle import OscBundle
from pythonosc.osc_message import OscMessage

from mqtt_osc_bridge.arguments import to_arguments
from mqtt_osc_bridge.bundle import ControlBundle, ControlMessage
from mqtt_osc_bridge.transport import OscTransport, TransportError, _PacketDispatcher, parse_datagram

from conftest import find_free_udp_port, wait_for


def msg(address, *values):
    return ControlMessage(address, tuple(to_arguments(values)))


def deep_bundle(depth):
    bundle = ControlBundle(messages=(msg("/leaf", 1),))
    for _ in range(depth):
        bundle = ControlBundle(bundles=(bundle,))
    return bundle


def deep_bundle_datagram(depth):
    data = b"/a\x00\x00,\x00\x00\x00"
    for _ in range(depth):
        data = b"#bundle\x00" + struct.pack(">IIi", 0, 1, len(data)) + data
    return data


class Collector:
    """Packet handler recording what the transport delivers."""

    def __init__(self):
        self.packets = []
        self._lock = threading.Lock()

    def __call__(self, packet, client_address):
        with self._lock:
            self.packets.append((packet, client_address))


@pytest.fixture
def server_transport(udp_peer):
    collector = Collector()
    transport = OscTransport(
        host="127.0.0.1",
        port=udp_peer.port,
        bind_addr="127.0.0.1",
        bind_port=find_free_udp_port(),
        on_packet=collector,
        name="osc/test",
    )
    transport.start()
    transport.collector = collector
    yield transport
    transport.stop()


class TestParseDatagram:
    """Datagram classification."""

    def test_message(self):
        assert isinstance(parse_datagram(b"/a\x00\x00,\x00\x00\x00"), OscMessage)

    def test_bundle(self):
        data = b"#bundle\x00" + b"\x00\x00\x00\x00\x00\x00\x00\x01"
        assert isinstance(parse_datagram(data), OscBundle)

    def test_unknown(self):
        assert parse_datagram(b"hello") == b"hello"

    def test_too_deep_bundle_is_dropped(self, caplog):
        collector = Collector()
        packet_dispatcher = _PacketDispatcher(collector)
        assert packet_dispatcher.call_handlers_for_packet(deep_bundle_datagram(2000), ("127.0.0.1", 9)) == []
        assert collector.packets == []
        assert "Malformed OSC packet" in caplog.text


class TestClientOnly:
    """No bind address: each send uses an ephemeral socket."""

    def test_send_message(self, udp_peer):
        transport = OscTransport(host="127.0.0.1", port=udp_peer.port)
        transport.start()
        assert not transport.is_serving

        data = transport.send(msg("/ch/1/mute", 0))
        received, _ = udp_peer.receive()
        assert received == data
        message = OscMessage(received)
        assert message.address == "/ch/1/mute"
        assert message.params == [0]

    def test_send_bundle(self, udp_peer):
        transport = OscTransport(host="127.0.0.1", port=udp_peer.port)
        bundle = ControlBundle(messages=(msg("/a", 1), msg("/b", "x")))
        transport.send(bundle)
        received, _ = udp_peer.receive()
        wire = OscBundle(received)
        assert [m.address for m in wire] == ["/a", "/b"]

    def test_none_packet(self):
        assert OscTransport(host="127.0.0.1", port=9).send(None) is None

    def test_no_host(self):
        with pytest.raises(TransportError, match="No OSC host configured"):
            OscTransport(bind_addr="127.0.0.1").send(msg("/a"))

    def test_unresolvable_host(self):
        transport = OscTransport(host="no-such-host.invalid", port=9000)
        with pytest.raises(TransportError, match="Resolve"):
            transport.send(msg("/a"))

    def test_too_deep_bundle(self, udp_peer):
        transport = OscTransport(host="127.0.0.1", port=udp_peer.port)
        with pytest.raises(TransportError, match="Encode failed"):
            transport.send(deep_bundle(5000))


class TestServer:
    """Bind address set: receive and send share one socket."""

    def test_receive_message(self, server_transport, udp_peer):
        udp_peer.send_to(b"/hello\x00\x00,i\x00\x00\x00\x00\x00\x05", server_transport.bind_port)
        assert wait_for(lambda: server_transport.collector.packets)
        packet, client_address = server_transport.collector.packets[0]
        assert isinstance(packet, OscMessage)
        assert packet.params == [5]
        assert client_address[1] == udp_peer.port

    def test_receive_bundle_whole(self, server_transport, udp_peer):
        """Bundles reach the handler as one packet, not per message."""
        transport = OscTransport(host="127.0.0.1", port=server_transport.bind_port)
        transport.send(ControlBundle(messages=(msg("/a", 1), msg("/b", 2))))
        assert wait_for(lambda: server_transport.collector.packets)
        packet, _ = server_transport.collector.packets[0]
        assert isinstance(packet, OscBundle)
        assert len(server_transport.collector.packets) == 1

    def test_receive_unknown_kind(self, server_transport, udp_peer):
        udp_peer.send_to(b"garbage!", server_transport.bind_port)
        assert wait_for(lambda: server_transport.collector.packets)
        assert server_transport.collector.packets[0][0] == b"garbage!"

    def test_send_from_bound_port(self, server_transport, udp_peer):
        server_transport.send(msg("/xremote"))
        received, source = udp_peer.receive()
        assert OscMessage(received).address == "/xremote"
        assert source == ("127.0.0.1", server_transport.bind_port)

    def test_handler_error_keeps_serving(self, udp_peer):
        calls = []

        def handler(packet, client_address):
            calls.append(packet)
            raise RuntimeError("boom")

        transport = OscTransport(
            host="127.0.0.1", port=udp_peer.port,
            bind_addr="127.0.0.1", bind_port=find_free_udp_port(),
            on_packet=handler,
        )
        transport.start()
        try:
            for _ in range(2):
                udp_peer.send_to(b"/a\x00\x00,\x00\x00\x00", transport.bind_port)
            assert wait_for(lambda: len(calls) == 2)
        finally:
            transport.stop()

    def test_bind_conflict(self, server_transport):
        other = OscTransport(bind_addr="127.0.0.1", bind_port=server_transport.bind_port)
        with pytest.raises(TransportError, match="bind"):
            other.start()

    def test_stop_is_idempotent(self, server_transport):
        server_transport.stop()
        assert not server_transport.is_serving
        server_transport.stop()
