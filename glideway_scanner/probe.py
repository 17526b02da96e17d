"""
Probe Module - Single-port connectivity checks

A probe makes one connection attempt against one port and classifies it as
open, closed or filtered. It never reads or writes payload data on TCP; the
open socket is handed to the fingerprinting stage. Every socket a scan opens
is registered with the scan's ConnectionTracker so that cancellation can
close all of them at once.
"""

import ipaddress
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional, Set

logger = logging.getLogger(__name__)

STATE_OPEN = "open"
STATE_CLOSED = "closed"
STATE_FILTERED = "filtered"


class UDPProbe(NamedTuple):
    name: str
    service: str
    payload: bytes


# Well-known UDP services that answer a single datagram
UDP_PROBES: Dict[int, UDPProbe] = {
    # DNS: standard query for version.bind TXT/CHAOS
    53: UDPProbe(
        "DNSVersionBindReq", "dns",
        b"\x00\x06\x01\x00\x00\x01\x00\x00\x00\x00\x00\x00"
        b"\x07version\x04bind\x00\x00\x10\x00\x03",
    ),
    # NTP: version 4 client request
    123: UDPProbe("NTPRequest", "ntp", b"\xe3" + b"\x00" * 47),
    # SNMPv1 get-request for sysDescr.0 with community "public"
    161: UDPProbe(
        "SNMPv1GetRequest", "snmp",
        b"\x30\x26\x02\x01\x00\x04\x06public\xa0\x19\x02\x01\x01\x02\x01\x00"
        b"\x02\x01\x00\x30\x0e\x30\x0c\x06\x08\x2b\x06\x01\x02\x01\x01\x01\x00\x05\x00",
    ),
}


def address_family(address: str) -> int:
    """Return AF_INET6 for IPv6 literals and AF_INET for everything else."""
    try:
        if ipaddress.ip_address(address).version == 6:
            return socket.AF_INET6
    except ValueError:
        pass
    return socket.AF_INET


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class ConnectionTracker:
    """
    Registry of every live socket belonging to one scan.

    close_all() is called on cancellation: it shuts down every registered
    socket, which wakes threads blocked in recv(), and any socket registered
    afterwards is closed immediately.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sockets: Set[socket.socket] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, sock: socket.socket) -> bool:
        """
        Track a socket.

        Returns:
            bool: False if the tracker is already closed (the socket was closed too)
        """
        with self._lock:
            if not self._closed:
                self._sockets.add(sock)
                return True
        _close_quietly(sock)
        return False

    def replace(self, old: socket.socket, new: socket.socket) -> bool:
        """Swap a raw socket for the object that wraps it (e.g. an SSLSocket)."""
        with self._lock:
            self._sockets.discard(old)
            if not self._closed:
                self._sockets.add(new)
                return True
        _close_quietly(new)
        return False

    def release(self, sock: socket.socket) -> None:
        """Stop tracking a socket and close it."""
        with self._lock:
            self._sockets.discard(sock)
        _close_quietly(sock)

    def close_all(self) -> int:
        """Close every tracked socket and refuse new ones. Returns how many were closed."""
        with self._lock:
            self._closed = True
            sockets = list(self._sockets)
            self._sockets.clear()
        for sock in sockets:
            _close_quietly(sock)
        if sockets:
            logger.debug(f"Closed {len(sockets)} in-flight connections")
        return len(sockets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sockets)


@dataclass
class ProbeResult:
    port: int
    state: str
    sock: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        return self.state == STATE_OPEN


def open_connection(address: str, port: int, timeout: float,
                    tracker: Optional[ConnectionTracker] = None) -> socket.socket:
    """
    Connect a TCP socket, registering it with the tracker first.

    Raises:
        OSError: If the connection is refused, times out, or the tracker is closed
    """
    sock = socket.socket(address_family(address), socket.SOCK_STREAM)
    if tracker is not None and not tracker.register(sock):
        raise ConnectionAbortedError("scan cancelled before connect")
    try:
        sock.settimeout(timeout)
        sock.connect((address, port))
    except BaseException:
        if tracker is not None:
            tracker.release(sock)
        else:
            _close_quietly(sock)
        raise
    return sock


def probe_tcp(address: str, port: int, timeout: float,
              tracker: Optional[ConnectionTracker] = None) -> ProbeResult:
    """
    Attempt a TCP connection to one port.

    Args:
        address: IP address of the target
        port: Port number to probe
        timeout: Connect timeout in seconds
        tracker: Optional tracker the new socket is registered with

    Returns:
        ProbeResult: open (with the connected socket), closed, or filtered
    """
    try:
        sock = open_connection(address, port, timeout, tracker)
    except ConnectionRefusedError:
        return ProbeResult(port, STATE_CLOSED)
    except socket.timeout:
        return ProbeResult(port, STATE_FILTERED)
    except OSError as e:
        logger.debug(f"Connect to {address}:{port} failed - {e}")
        return ProbeResult(port, STATE_FILTERED)
    return ProbeResult(port, STATE_OPEN, sock)


def probe_udp(address: str, port: int, timeout: float,
              tracker: Optional[ConnectionTracker] = None) -> Optional[bytes]:
    """
    Best-effort UDP check for the services listed in UDP_PROBES.

    Returns:
        Optional[bytes]: The reply datagram, or None if the port is not a known
        UDP service or nothing answered within the timeout
    """
    probe = UDP_PROBES.get(port)
    if probe is None:
        return None

    sock = socket.socket(address_family(address), socket.SOCK_DGRAM)
    if tracker is not None and not tracker.register(sock):
        return None
    try:
        sock.settimeout(timeout)
        sock.connect((address, port))
        sock.send(probe.payload)
        data = sock.recv(4096)
        return data or None
    except OSError as e:
        # ICMP port unreachable surfaces as ConnectionRefusedError
        logger.debug(f"UDP probe {probe.name} to {address}:{port} got no answer - {e}")
        return None
    finally:
        if tracker is not None:
            tracker.release(sock)
        else:
            _close_quietly(sock)
