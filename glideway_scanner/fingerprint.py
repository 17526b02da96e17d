"""
Fingerprint Module - Service identification for open ports

Identification works in three stages on an already-connected socket:

1. Passive read: wait briefly for an unsolicited banner (SSH, FTP, SMTP, ...).
2. Active probes: send a small, ordered set of payloads and read the replies.
3. Matching: compare the bytes received against SIGNATURES. The first
   signature in table order that matches wins.

The signature table is built once at import time and never mutated, so it is
shared by every probe thread without locking.
"""

import logging
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Pattern, Tuple

from glideway_scanner.models import UNKNOWN_PROTOCOL

logger = logging.getLogger(__name__)

MAX_RESPONSE = 16384
EXCERPT_LENGTH = 64
# Extra time allowed to collect the rest of a response once its first bytes arrive
READ_GRACE = 0.15

_NON_PRINTABLE = re.compile(r"[^\x20-\x7e]")


class _Groups(dict):
    def __missing__(self, key):
        return ""


@dataclass(frozen=True)
class Signature:
    """
    One entry of the fingerprint table.

    Exactly one matcher is used: ``pattern`` (a bytes regex) or ``prefixes``
    (a tuple of byte strings the response must start with). The text fields
    are templates filled from the pattern's named groups, e.g. ``"{version}"``.
    """

    name: str
    protocol: str
    pattern: Optional[Pattern] = None
    prefixes: Tuple[bytes, ...] = ()
    product: str = ""
    version: str = ""
    info: str = ""
    hostname: str = ""
    operating_system: str = ""
    device_type: str = ""

    def match(self, data: bytes) -> Optional[Dict[str, str]]:
        """
        Test the signature against response bytes.

        Returns:
            Optional[Dict[str, str]]: The extracted fields, or None on no match
        """
        if not data:
            return None
        if self.pattern is not None:
            m = self.pattern.search(data)
            if m is None:
                return None
            groups = _Groups({
                k: clean_text(v.decode("utf-8", errors="ignore"), 120)
                for k, v in m.groupdict().items() if v is not None
            })
        elif self.prefixes and data.startswith(self.prefixes):
            groups = _Groups()
        else:
            return None

        return {
            "protocol": self.protocol,
            "service": self.protocol,
            "product_name": self.product.format_map(groups).strip(),
            "version": self.version.format_map(groups).strip(),
            "info": self.info.format_map(groups).strip(),
            "hostname": self.hostname.format_map(groups).strip(),
            "operating_system": self.operating_system.format_map(groups).strip(),
            "device_type": self.device_type.format_map(groups).strip(),
        }


def _sig(name: str, protocol: str, pattern: bytes, flags: int = 0, **fields) -> Signature:
    return Signature(name=name, protocol=protocol, pattern=re.compile(pattern, flags), **fields)


# Header block of an HTTP/RTSP response up to the named header
_HTTP_HEAD = rb"^HTTP/1\.[01] \d{3}[^\r\n]*\r\n(?:[^\r\n]+\r\n)*?(?i:server): "

# Order matters: specific products before generic protocol fallbacks
SIGNATURES: List[Signature] = [
    # SSH
    _sig("ssh-openssh-ubuntu", "ssh", rb"^SSH-(?P<proto>[\d.]+)-OpenSSH_(?P<version>[\w.]+)[ -]+Ubuntu",
         product="OpenSSH", version="{version}", info="Ubuntu Linux; protocol {proto}", operating_system="Linux"),
    _sig("ssh-openssh-debian", "ssh", rb"^SSH-(?P<proto>[\d.]+)-OpenSSH_(?P<version>[\w.]+)[ -]+Debian",
         product="OpenSSH", version="{version}", info="Debian; protocol {proto}", operating_system="Linux"),
    _sig("ssh-openssh-windows", "ssh", rb"^SSH-(?P<proto>[\d.]+)-OpenSSH_for_Windows_(?P<version>[\w.]+)",
         product="OpenSSH for_Windows", version="{version}", info="protocol {proto}", operating_system="Windows"),
    _sig("ssh-openssh", "ssh", rb"^SSH-(?P<proto>[\d.]+)-OpenSSH_(?P<version>[\w.]+)",
         product="OpenSSH", version="{version}", info="protocol {proto}"),
    _sig("ssh-dropbear", "ssh", rb"^SSH-(?P<proto>[\d.]+)-dropbear_(?P<version>[\w.]+)",
         product="Dropbear sshd", version="{version}", info="protocol {proto}", operating_system="Linux"),
    _sig("ssh-mikrotik", "ssh", rb"^SSH-(?P<proto>[\d.]+)-ROSSSH",
         product="MikroTik RouterOS sshd", info="protocol {proto}",
         operating_system="RouterOS", device_type="router"),
    _sig("ssh-cisco", "ssh", rb"^SSH-(?P<proto>[\d.]+)-Cisco-(?P<version>[\w.]+)",
         product="Cisco SSH", version="{version}", info="protocol {proto}",
         operating_system="IOS", device_type="router"),
    _sig("ssh", "ssh", rb"^SSH-(?P<proto>[\d.]+)-(?P<product>[^\s\r\n]+)",
         product="{product}", info="protocol {proto}"),

    # FTP
    _sig("ftp-vsftpd", "ftp", rb"^220 \(vsFTPd (?P<version>[\w.]+)\)",
         product="vsftpd", version="{version}", operating_system="Unix"),
    _sig("ftp-proftpd", "ftp", rb"^220[- ]ProFTPD (?P<version>[\w.]+)",
         product="ProFTPD", version="{version}"),
    _sig("ftp-filezilla", "ftp", rb"^220[- ]FileZilla Server(?: version)? ?(?P<version>[\w.]*)",
         product="FileZilla ftpd", version="{version}", operating_system="Windows"),
    _sig("ftp-mikrotik", "ftp", rb"^220 (?P<hostname>[\w.-]+) FTP server \(MikroTik (?P<version>[\w.]+)\) ready",
         product="MikroTik router ftpd", version="{version}", hostname="{hostname}",
         operating_system="RouterOS", device_type="router"),
    _sig("ftp-microsoft", "ftp", rb"^220[- ]Microsoft FTP Service",
         product="Microsoft ftpd", operating_system="Windows"),
    _sig("ftp-pureftpd", "ftp", rb"^220[- ]-+ Welcome to Pure-FTPd",
         product="Pure-FTPd"),
    _sig("ftp", "ftp", rb"^220[- ][^\r\n]*(?i:ftp)"),

    # SMTP
    _sig("smtp-postfix", "smtp", rb"^220 (?P<hostname>[\w.-]+) ESMTP Postfix",
         product="Postfix smtpd", hostname="{hostname}"),
    _sig("smtp-exim", "smtp", rb"^220 (?P<hostname>[\w.-]+) ESMTP Exim (?P<version>[\w.]+)",
         product="Exim smtpd", version="{version}", hostname="{hostname}"),
    _sig("smtp-microsoft", "smtp", rb"^220 (?P<hostname>[\w.-]+) Microsoft ESMTP MAIL Service",
         product="Microsoft ESMTP", hostname="{hostname}", operating_system="Windows"),
    _sig("smtp", "smtp", rb"^220[- ](?P<hostname>[\w.-]+) [^\r\n]*(?i:smtp)",
         hostname="{hostname}"),

    # Mail retrieval
    _sig("pop3-dovecot", "pop3", rb"^\+OK [^\r\n]*Dovecot", product="Dovecot pop3d"),
    _sig("pop3", "pop3", rb"^\+OK(?P<info>[^\r\n]*)", info="{info}"),
    _sig("imap-dovecot", "imap", rb"^\* OK [^\r\n]*Dovecot", product="Dovecot imapd"),
    _sig("imap", "imap", rb"^\* OK(?P<info>[^\r\n]*)", info="{info}"),

    # Databases
    _sig("mysql-mariadb", "mysql", rb"^.\x00\x00\x00\x0a(?:5\.5\.5-)?(?P<version>[\d.]+)-MariaDB", re.S,
         product="MariaDB", version="{version}"),
    _sig("mysql", "mysql", rb"^.\x00\x00\x00\x0a(?P<version>\d[\w.-]*)\x00", re.S,
         product="MySQL", version="{version}"),
    _sig("mysql-unauthorized", "mysql", rb"^.\x00\x00\x00\xff.\x04Host '[^']*' is not allowed to connect", re.S,
         product="MySQL", info="unauthorized"),
    _sig("postgresql", "postgresql",
         rb"^E\x00\x00..S(?:FATAL|ERROR)\x00(?:VFATAL\x00)?C0A000\x00Munsupported frontend protocol", re.S,
         product="PostgreSQL DB"),
    _sig("redis", "redis", rb"^-(?:ERR wrong number of arguments for 'get' command|NOAUTH Authentication required|DENIED Redis)",
         product="Redis key-value store"),

    # TLS alert in reply to a plaintext probe
    _sig("ssl-alert", "ssl", rb"^\x15\x03[\x00-\x04]\x00\x02\x02"),

    # HTTP, with the product taken from the Server header
    _sig("http-iis", "http", _HTTP_HEAD + rb"Microsoft-IIS/(?P<version>[\d.]+)",
         product="Microsoft IIS httpd", version="{version}", operating_system="Windows"),
    _sig("http-nginx", "http", _HTTP_HEAD + rb"nginx(?:/(?P<version>[\d.]+))?",
         product="nginx", version="{version}"),
    _sig("http-apache", "http", _HTTP_HEAD + rb"Apache(?:/(?P<version>[\d.]+))?(?: \((?P<os>[^)\r\n]+)\))?",
         product="Apache httpd", version="{version}", info="{os}", operating_system="{os}"),
    _sig("http-lighttpd", "http", _HTTP_HEAD + rb"lighttpd(?:/(?P<version>[\d.]+))?",
         product="lighttpd", version="{version}"),
    _sig("http-mikrotik", "http", _HTTP_HEAD + rb"Mikrotik HttpProxy",
         product="MikroTik http proxy", operating_system="RouterOS", device_type="router"),
    _sig("http-server", "http", _HTTP_HEAD + rb"(?P<product>[^\r\n/]+)(?:/(?P<version>[^\s\r\n]+))?",
         product="{product}", version="{version}"),
    _sig("http", "http", rb"^HTTP/1\.[01] \d{3}"),

    # Streaming and remote desktop
    _sig("rtsp", "rtsp", rb"^RTSP/1\.0 \d{3}", device_type="webcam"),
    _sig("vnc", "vnc", rb"^RFB (?P<version>\d{3}\.\d{3})\n", product="VNC", info="protocol {version}"),

    # Telnet option negotiation: IAC WILL / DO / DONT
    Signature(name="telnet", protocol="telnet", prefixes=(b"\xff\xfb", b"\xff\xfd", b"\xff\xfe")),
]

# First byte of an NTP reply: any leap indicator and version, mode 4 (server)
_NTP_SERVER_MODE = b"[" + b"".join(re.escape(bytes([b])) for b in range(256) if b & 0x07 == 4) + b"]"

# Replies to the datagrams in probe.UDP_PROBES
UDP_SIGNATURES: List[Signature] = [
    _sig("dns-version-bind", "dns",
         rb"^\x00\x06[\x80-\xff].*\x00\x10\x00\x03.{6}.(?P<version>[\x20-\x7e]+)$", re.S,
         info="version.bind: {version}"),
    _sig("dns", "dns", rb"^\x00\x06[\x80-\xff]", re.S),
    _sig("ntp", "ntp", rb"^" + _NTP_SERVER_MODE + rb".{47}", re.S),
    _sig("snmp-cisco", "snmp", rb"^\x30.*Cisco IOS Software", re.S,
         operating_system="IOS", device_type="router"),
    _sig("snmp-linux", "snmp", rb"^\x30.*\x04.Linux (?P<hostname>[\w.-]+) (?P<version>[\w.-]+)", re.S,
         hostname="{hostname}", operating_system="Linux", version="{version}"),
    _sig("snmp", "snmp", rb"^\x30.*public", re.S),
]


class ActiveProbe(NamedTuple):
    name: str
    payload: bytes


PASSIVE_PROBE = "NULL"

ACTIVE_PROBES: List[ActiveProbe] = [
    ActiveProbe("GetRequest", b"GET / HTTP/1.0\r\n\r\n"),
    ActiveProbe("GenericLines", b"\r\n\r\n"),
]


def clean_text(text: str, max_len: int = EXCERPT_LENGTH) -> str:
    """Strip non-printable characters and truncate."""
    text = _NON_PRINTABLE.sub("", text.replace("\r", " ").replace("\n", " ")).strip()
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


def match_signatures(data: bytes, signatures: List[Signature] = SIGNATURES) -> Optional[Tuple[Signature, Dict[str, str]]]:
    """Return the first signature in table order that matches, with its fields."""
    for signature in signatures:
        fields = signature.match(data)
        if fields is not None:
            return signature, fields
    return None


@dataclass
class Fingerprint:
    """Outcome of identifying one open port."""

    protocol: str = UNKNOWN_PROTOCOL
    service: str = UNKNOWN_PROTOCOL
    product_name: str = ""
    version: str = ""
    info: str = ""
    hostname: str = ""
    operating_system: str = ""
    device_type: str = ""
    probe_name: str = ""
    signature: str = ""
    responded: bool = False
    raw: bytes = field(default=b"", repr=False)

    @property
    def identified(self) -> bool:
        return bool(self.signature) and self.protocol not in (UNKNOWN_PROTOCOL, "ssl")

    def fields(self) -> Dict[str, str]:
        return {
            "protocol": self.protocol,
            "service": self.service,
            "product_name": self.product_name,
            "version": self.version,
            "info": self.info,
            "hostname": self.hostname,
            "operating_system": self.operating_system,
            "device_type": self.device_type,
            "probe_name": self.probe_name,
        }


def fingerprint_from_match(probe_name: str, signature: Signature, fields: Mapping[str, str],
                           raw: bytes = b"") -> Fingerprint:
    return Fingerprint(probe_name=probe_name, signature=signature.name, responded=True, raw=raw, **fields)


def identify_udp(probe_name: str, service: str, data: bytes) -> Fingerprint:
    """Fingerprint a UDP reply; a reply that matches nothing keeps the expected service."""
    matched = match_signatures(data, UDP_SIGNATURES)
    if matched:
        signature, fields = matched
        return fingerprint_from_match(probe_name, signature, fields, data)
    return Fingerprint(protocol=service, service=service, probe_name=probe_name, responded=True,
                       info=clean_text(data.decode("latin-1")), raw=data)


class ServiceFingerprinter:
    """
    Identifies the service behind an open TCP connection.

    Args:
        signatures: Ordered signature table (defaults to SIGNATURES)
        probes: Ordered active probes sent when no banner matched
        banner_wait: Seconds to wait for an unsolicited banner
    """

    def __init__(self, signatures: Optional[List[Signature]] = None,
                 probes: Optional[List[ActiveProbe]] = None,
                 banner_wait: float = 0.5):
        self.signatures = SIGNATURES if signatures is None else signatures
        self.probes = ACTIVE_PROBES if probes is None else probes
        self.banner_wait = banner_wait

    def _read(self, sock: socket.socket, deadline: float, wait: float) -> Tuple[bytes, bool]:
        """
        Read whatever arrives before the wait or the deadline runs out.

        Returns:
            Tuple[bytes, bool]: The bytes read and whether the peer closed the connection
        """
        data = b""
        limit = min(deadline, time.monotonic() + wait)
        while len(data) < MAX_RESPONSE:
            remaining = limit - time.monotonic()
            if remaining <= 0:
                break
            try:
                sock.settimeout(remaining)
                chunk = sock.recv(4096)
            except socket.timeout:
                break
            except OSError as e:
                # Reset or closed by cancellation: use what was read so far
                logger.debug(f"Read interrupted - {e}")
                return data, True
            if not chunk:
                return data, True
            data += chunk
            # After the first bytes, only wait briefly for the remainder
            limit = min(deadline, time.monotonic() + READ_GRACE)
        return data, False

    def _match(self, probe_name: str, response: bytes, accumulated: bytes) -> Optional[Fingerprint]:
        for signature in self.signatures:
            for candidate in (response, accumulated):
                fields = signature.match(candidate)
                if fields is not None:
                    return fingerprint_from_match(probe_name, signature, fields, candidate)
        return None

    def identify(self, sock: socket.socket, timeout: float,
                 reconnect: Optional[Callable[[float], socket.socket]] = None,
                 release: Optional[Callable[[socket.socket], None]] = None,
                 cancelled: Optional[Callable[[], bool]] = None) -> Fingerprint:
        """
        Identify the service on a connected socket.

        Args:
            sock: Connected socket; the caller keeps ownership and closes it
            timeout: Total time budget in seconds for every read and probe
            reconnect: Opens a fresh connection when the peer closed the previous one;
                called with the seconds left in the budget
            release: Closes a socket opened through reconnect
            cancelled: Returns True once the scan has been cancelled

        Returns:
            Fingerprint: Matched fields, or an "unknown" fingerprint with a raw excerpt
        """
        deadline = time.monotonic() + timeout
        opened: List[socket.socket] = []
        accumulated = b""
        try:
            response, closed = self._read(sock, deadline, self.banner_wait)
            accumulated += response
            if response:
                found = self._match(PASSIVE_PROBE, response, accumulated)
                if found:
                    return found

            for index, probe in enumerate(self.probes):
                if time.monotonic() >= deadline or (cancelled and cancelled()):
                    break
                if closed:
                    if reconnect is None:
                        break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    try:
                        sock = reconnect(remaining)
                    except OSError as e:
                        logger.debug(f"Reconnect for probe {probe.name} failed - {e}")
                        break
                    opened.append(sock)
                try:
                    sock.sendall(probe.payload)
                except OSError as e:
                    logger.debug(f"Sending probe {probe.name} failed - {e}")
                    closed = True
                    continue
                # Split what is left of the budget across the remaining probes
                wait = (deadline - time.monotonic()) / (len(self.probes) - index)
                response, closed = self._read(sock, deadline, wait)
                if not response:
                    continue
                accumulated += response
                found = self._match(probe.name, response, accumulated)
                if found:
                    return found
        finally:
            for extra in opened:
                if release is not None:
                    release(extra)
                else:
                    extra.close()

        if accumulated:
            return Fingerprint(responded=True, info=clean_text(accumulated.decode("latin-1")), raw=accumulated)
        return Fingerprint()
