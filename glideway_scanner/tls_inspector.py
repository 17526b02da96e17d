"""
TLS Inspector - TLS handshake check for open ports

Every open TCP port gets a handshake attempt on a fresh connection, with
certificate verification disabled. A successful handshake marks the port as
TLS-enabled and yields a hostname taken from the peer certificate.
"""

import logging
import socket
import ssl
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from glideway_scanner.probe import ConnectionTracker, open_connection

logger = logging.getLogger(__name__)


@dataclass
class TLSResult:
    enabled: bool = False
    hostname: str = ""
    version: str = ""
    cipher: str = ""
    # Result of the callback run over the encrypted channel, if any
    inner: Optional[object] = None


def hostname_from_der(der_cert: Optional[bytes]) -> str:
    """
    Extract a hostname from a DER-encoded certificate.

    The first DNS subjectAltName wins; the subject commonName is the fallback.

    Args:
        der_cert: Certificate bytes as returned by getpeercert(binary_form=True)

    Returns:
        str: The hostname, or an empty string if none could be read
    """
    if not der_cert:
        return ""
    try:
        cert = x509.load_der_x509_certificate(der_cert)
    except ValueError as e:
        logger.debug(f"Could not parse peer certificate - {e}")
        return ""

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
        if names:
            return names[0]
    except x509.ExtensionNotFound:
        pass

    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        return str(cn_attrs[0].value)
    return ""


def _build_context() -> ssl.SSLContext:
    # Fingerprinting only: the certificate is read, never trusted
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class TLSInspector:
    """Attempts TLS handshakes against open ports."""

    def __init__(self, context: Optional[ssl.SSLContext] = None):
        self.context = context or _build_context()

    def inspect(self, address: str, port: int, timeout: float,
                tracker: Optional[ConnectionTracker] = None,
                server_name: Optional[str] = None,
                on_channel: Optional[Callable[[ssl.SSLSocket], object]] = None) -> TLSResult:
        """
        Try a TLS handshake on a fresh connection.

        Args:
            address: IP address of the target
            port: Open port to test
            timeout: Connect and handshake timeout in seconds
            tracker: Scan connection tracker; cancellation closes the socket
            server_name: SNI name to send, when the target was given as a hostname
            on_channel: Called with the encrypted socket after a successful handshake;
                its return value is stored in TLSResult.inner

        Returns:
            TLSResult: enabled=False on any handshake failure or timeout
        """
        try:
            raw = open_connection(address, port, timeout, tracker)
        except OSError as e:
            logger.debug(f"TLS connect to {address}:{port} failed - {e}")
            return TLSResult()

        sock: socket.socket = raw
        try:
            tls_sock = self.context.wrap_socket(raw, server_hostname=server_name,
                                                do_handshake_on_connect=False)
            sock = tls_sock
            if tracker is not None and not tracker.replace(raw, tls_sock):
                return TLSResult()
            tls_sock.settimeout(timeout)
            tls_sock.do_handshake()

            cipher = tls_sock.cipher()
            result = TLSResult(
                enabled=True,
                hostname=hostname_from_der(tls_sock.getpeercert(binary_form=True)),
                version=tls_sock.version() or "",
                cipher=cipher[0] if cipher else "",
            )
            logger.debug(f"TLS handshake with {address}:{port} succeeded ({result.version})")
            if on_channel is not None:
                result.inner = on_channel(tls_sock)
            return result
        except (ssl.SSLError, socket.timeout, OSError) as e:
            logger.debug(f"TLS handshake with {address}:{port} failed - {e}")
            return TLSResult()
        finally:
            if tracker is not None:
                tracker.release(sock)
            else:
                sock.close()
