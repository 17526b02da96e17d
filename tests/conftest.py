import datetime
import socket
import ssl
import threading
import time

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from glideway_scanner.events import EventBuffer
from glideway_scanner.exceptions import ScanCancelledError
from glideway_scanner.models import PortInfo
from glideway_scanner.probe import UDP_PROBES

HTTP_RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Server: nginx/1.18.0\r\n"
    b"Content-Length: 0\r\n"
    b"Connection: close\r\n\r\n"
)

TLS_HOSTNAME = "scanner.test"


class FixtureServer:
    """Loopback TCP server running handler(conn) for every accepted connection."""

    def __init__(self, handler):
        self.handler = handler
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.port = self.sock.getsockname()[1]
        self.connections = 0
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while not self._stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        try:
            conn.settimeout(3.0)
            self.handler(conn)
        except OSError:
            pass
        finally:
            try:
                conn.close()
            except OSError:
                pass

    def close(self):
        self._stopped.set()
        self.sock.close()


def drain(conn):
    """Read until the client goes away."""
    try:
        while conn.recv(4096):
            pass
    except OSError:
        pass


def banner_handler(banner: bytes):
    def handler(conn):
        conn.sendall(banner)
        drain(conn)
    return handler


def http_handler(conn):
    # Answers anything it receives, as most web servers do with a 400
    if conn.recv(4096):
        conn.sendall(HTTP_RESPONSE)


def silent_handler(conn):
    drain(conn)


@pytest.fixture
def start_server():
    servers = []

    def _start(handler):
        server = FixtureServer(handler)
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.close()


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture(scope="session")
def certificate(tmp_path_factory):
    """Self-signed certificate for TLS_HOSTNAME."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "fallback.test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(TLS_HOSTNAME)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    directory = tmp_path_factory.mktemp("tls")
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return cert, str(cert_path), str(key_path)


@pytest.fixture
def tls_http_handler(certificate):
    """Handler speaking HTTP only inside TLS."""
    _, cert_path, key_path = certificate
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_path, key_path)

    def handler(conn):
        try:
            tls_conn = context.wrap_socket(conn, server_side=True)
        except (ssl.SSLError, OSError):
            return
        try:
            if tls_conn.recv(4096):
                tls_conn.sendall(HTTP_RESPONSE)
        finally:
            tls_conn.close()
    return handler


@pytest.fixture
def events():
    return EventBuffer()


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class StubEngine:
    """
    Stands in for ScannerEngine.

    Reports each port in order. With block_after set, it stops after that many
    ports until the scan is cancelled, then reports late results the way
    in-flight probes would.
    """

    def __init__(self, block_after=None, error=None, found=None):
        self.block_after = block_after
        self.error = error
        self.found = found or {}
        self.blocked = threading.Event()
        self.finished = threading.Event()

    def scan_ports_combined(self, config, callback, cancel_event, tracker):
        try:
            if self.error is not None:
                raise self.error
            for index, port in enumerate(config.ports()):
                if index == self.block_after:
                    self.blocked.set()
                    cancel_event.wait(5)
                    callback(PortInfo(port, protocol="http", service="http"))
                    callback(PortInfo.progress(port))
                    raise ScanCancelledError()
                if port in self.found:
                    callback(self.found[port])
                callback(PortInfo.progress(port))
            return config.total_ports
        finally:
            self.finished.set()


SNMP_LINUX_REPLY = (
    b"\x30\x3a\x02\x01\x00\x04\x06public\xa2\x2d\x02\x01\x01\x02\x01\x00\x02\x01\x00"
    b"\x30\x22\x30\x20\x06\x08\x2b\x06\x01\x02\x01\x01\x01\x00"
    b"\x04\x14Linux box1 5.15.0-91"
)


class UDPResponder:
    """Loopback UDP socket answering every datagram with a fixed reply."""

    def __init__(self, reply: bytes):
        self.reply = reply
        self.received = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.port = self.sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while True:
            try:
                data, peer = self.sock.recvfrom(4096)
                self.received.append(data)
                self.sock.sendto(self.reply, peer)
            except OSError:
                return

    def close(self):
        self.sock.close()


@pytest.fixture
def snmp_responder(monkeypatch):
    """SNMP agent on a free port, registered as a well-known UDP service."""
    responder = UDPResponder(SNMP_LINUX_REPLY)
    monkeypatch.setitem(UDP_PROBES, responder.port, UDP_PROBES[161])
    yield responder
    responder.close()
