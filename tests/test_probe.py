import socket

import pytest

from conftest import SNMP_LINUX_REPLY, silent_handler
from glideway_scanner.probe import (
    STATE_CLOSED,
    STATE_OPEN,
    UDP_PROBES,
    ConnectionTracker,
    address_family,
    open_connection,
    probe_tcp,
    probe_udp,
)


def test_open_port(start_server):
    server = start_server(silent_handler)
    result = probe_tcp("127.0.0.1", server.port, 1.0)
    try:
        assert result.state == STATE_OPEN
        assert result.is_open
        assert result.sock is not None
    finally:
        result.sock.close()


def test_closed_port(closed_port):
    result = probe_tcp("127.0.0.1", closed_port, 1.0)
    assert result.state == STATE_CLOSED
    assert result.sock is None


def test_open_socket_is_tracked(start_server):
    server = start_server(silent_handler)
    tracker = ConnectionTracker()
    result = probe_tcp("127.0.0.1", server.port, 1.0, tracker)
    assert len(tracker) == 1
    tracker.release(result.sock)
    assert len(tracker) == 0


def test_refused_connection_is_not_left_tracked(closed_port):
    tracker = ConnectionTracker()
    probe_tcp("127.0.0.1", closed_port, 1.0, tracker)
    assert len(tracker) == 0


def test_close_all_unblocks_reader(start_server):
    server = start_server(silent_handler)
    tracker = ConnectionTracker()
    sock = open_connection("127.0.0.1", server.port, 5.0, tracker)
    sock.settimeout(5.0)

    assert tracker.close_all() == 1
    assert tracker.closed
    assert len(tracker) == 0
    assert sock.fileno() == -1


def test_connect_after_close_all_is_refused(start_server):
    server = start_server(silent_handler)
    tracker = ConnectionTracker()
    tracker.close_all()

    sock = socket.socket()
    assert tracker.register(sock) is False
    assert sock.fileno() == -1

    result = probe_tcp("127.0.0.1", server.port, 1.0, tracker)
    assert not result.is_open
    assert server.connections == 0


def test_udp_probe_ignores_unknown_ports():
    assert probe_udp("127.0.0.1", 9999, 0.2) is None


def test_address_family():
    assert address_family("::1") == socket.AF_INET6
    assert address_family("127.0.0.1") == socket.AF_INET


def test_rejected_timeout_does_not_leak_tracked_socket(start_server):
    server = start_server(silent_handler)
    tracker = ConnectionTracker()
    with pytest.raises(ValueError):
        open_connection("127.0.0.1", server.port, -1, tracker)
    assert len(tracker) == 0


def test_udp_probe_returns_reply(snmp_responder):
    reply = probe_udp("127.0.0.1", snmp_responder.port, 1.0)
    assert reply == SNMP_LINUX_REPLY
    assert snmp_responder.received == [UDP_PROBES[161].payload]


def test_udp_probe_releases_tracked_socket(snmp_responder):
    tracker = ConnectionTracker()
    assert probe_udp("127.0.0.1", snmp_responder.port, 1.0, tracker) is not None
    assert len(tracker) == 0


def test_udp_probe_without_listener(monkeypatch):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    monkeypatch.setitem(UDP_PROBES, port, UDP_PROBES[53])
    assert probe_udp("127.0.0.1", port, 0.5) is None
