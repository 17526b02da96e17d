"""
Scanner Engine Module - Core scanning functionality

This module drives a whole scan: it resolves the target, hands the port range
to the worker pool, and for every port runs the connectivity probe followed by
service fingerprinting and TLS inspection. Results reach the caller through a
single callback that receives PortInfo records.
"""

import ipaddress
import logging
import socket
import threading
from typing import Callable, Optional

from colorama import Fore

from glideway_scanner.exceptions import ScanCancelledError, ScannerError
from glideway_scanner.fingerprint import Fingerprint, ServiceFingerprinter, identify_udp
from glideway_scanner.models import PortInfo, ScanConfig
from glideway_scanner.probe import UDP_PROBES, ConnectionTracker, open_connection, probe_tcp, probe_udp
from glideway_scanner.threading_module import DEFAULT_THREAD_CAP, ThreadingModule
from glideway_scanner.tls_inspector import TLSInspector

logger = logging.getLogger(__name__)

PortCallback = Callable[[PortInfo], None]


def resolve_target(target: str) -> str:
    """
    Resolve a hostname or IP literal to the address that will be probed.

    Raises:
        ScannerError: If the name cannot be resolved
    """
    target = target.strip()
    try:
        return str(ipaddress.ip_address(target))
    except ValueError:
        pass
    try:
        infos = socket.getaddrinfo(target, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ScannerError(f"Failed to resolve {target}: {e}") from e
    # Prefer IPv4 when the name has both
    infos.sort(key=lambda info: info[0] != socket.AF_INET)
    return infos[0][4][0]


class ScannerEngine:
    """
    Core scanning engine: probe, fingerprint and TLS-inspect a port range.

    Args:
        fingerprinter: Service identification stage
        tls_inspector: TLS handshake stage
        thread_cap: Process-wide upper bound on concurrent probes
    """

    def __init__(self, fingerprinter: Optional[ServiceFingerprinter] = None,
                 tls_inspector: Optional[TLSInspector] = None,
                 thread_cap: int = DEFAULT_THREAD_CAP):
        self.fingerprinter = fingerprinter or ServiceFingerprinter()
        self.tls_inspector = tls_inspector or TLSInspector()
        self.thread_cap = thread_cap

    def scan_port(self, address: str, port: int, config: ScanConfig,
                  tracker: Optional[ConnectionTracker] = None,
                  cancel_event: Optional[threading.Event] = None,
                  server_name: Optional[str] = None) -> Optional[PortInfo]:
        """
        Probe and identify a single port.

        Args:
            address: Resolved IP address of the target
            port: Port number to scan
            config: Scan parameters (timeout, UDP checks)
            tracker: Connection tracker of the running scan
            cancel_event: Cancellation event of the running scan
            server_name: Hostname the user asked for, used as TLS SNI

        Returns:
            Optional[PortInfo]: The identified port, or None if it is not open
        """
        cancelled = cancel_event.is_set if cancel_event is not None else (lambda: False)
        timeout = config.timeout

        # Step 1: Connectivity check, with the UDP fallback for well-known services
        result = probe_tcp(address, port, timeout, tracker)
        if not result.is_open:
            if config.udp and port in UDP_PROBES and not cancelled():
                return self._scan_udp(address, port, timeout, tracker)
            return None

        def reconnect(remaining: float) -> socket.socket:
            return open_connection(address, port, min(timeout, remaining), tracker)

        def release(sock: socket.socket) -> None:
            if tracker is not None:
                tracker.release(sock)
            else:
                sock.close()

        # Step 2: Identify the service over plaintext
        try:
            fingerprint = self.fingerprinter.identify(
                result.sock, timeout, reconnect=reconnect, release=release, cancelled=cancelled
            )
        finally:
            release(result.sock)

        if cancelled():
            return None

        # Step 3: TLS handshake; TLS-only services are identified over the encrypted channel
        def identify_over_tls(tls_sock) -> Fingerprint:
            return self.fingerprinter.identify(tls_sock, timeout, cancelled=cancelled)

        tls = self.tls_inspector.inspect(
            address, port, timeout, tracker, server_name=server_name,
            on_channel=None if fingerprint.identified else identify_over_tls
        )
        if isinstance(tls.inner, Fingerprint) and tls.inner.identified:
            fingerprint = tls.inner

        # Step 4: Merge the certificate hostname into the result
        fields = fingerprint.fields()
        if tls.hostname:
            fields["hostname"] = tls.hostname
        info = PortInfo(port=port, tls=tls.enabled, **fields)

        version_info = f" {info.product_name} {info.version}".rstrip() if info.product_name else ""
        logger.info(f"Port {port} is {Fore.GREEN}open{Fore.RESET} ({info.protocol}{version_info}"
                    f"{', tls' if info.tls else ''})")
        return info

    def _scan_udp(self, address: str, port: int, timeout: float,
                  tracker: Optional[ConnectionTracker]) -> Optional[PortInfo]:
        reply = probe_udp(address, port, timeout, tracker)
        if reply is None:
            return None
        probe = UDP_PROBES[port]
        fingerprint = identify_udp(probe.name, probe.service, reply)
        logger.info(f"Port {port}/udp is {Fore.GREEN}open{Fore.RESET} ({fingerprint.protocol})")
        return PortInfo(port=port, **fingerprint.fields())

    def scan_ports_combined(self, config: ScanConfig, callback: PortCallback,
                            cancel_event: Optional[threading.Event] = None,
                            tracker: Optional[ConnectionTracker] = None) -> int:
        """
        Scan every port of the configured range.

        For each processed port the callback first receives the PortInfo of an
        open port (if any) and then a progress record. Nothing is reported for a
        port whose probe finishes after cancellation.

        Args:
            config: Validated scan parameters
            callback: Receives port-found and progress records, from worker threads
            cancel_event: Setting it stops dispatch and abandons in-flight probes
            tracker: Connection tracker closed by the caller on cancellation

        Returns:
            int: Number of ports processed

        Raises:
            ScanCancelledError: If the cancel event fired before the range was done
            ScannerError: If the target cannot be resolved
        """
        cancel_event = cancel_event or threading.Event()
        tracker = tracker or ConnectionTracker()

        # Step 1: Resolve the target once for the whole range
        address = resolve_target(config.target)
        server_name = None if config.target.strip() == address else config.target.strip()
        if server_name:
            logger.info(f"Resolved {config.target} to {address}")

        # Step 2: Feed the range to the bounded worker pool
        pool = ThreadingModule(config.max_threads, cancel_event, thread_cap=self.thread_cap)
        processed = 0
        counter_lock = threading.Lock()

        def scan_one(port: int) -> None:
            nonlocal processed
            if cancel_event.is_set():
                return
            info = self.scan_port(address, port, config, tracker, cancel_event, server_name)
            if cancel_event.is_set():
                return
            if info is not None:
                callback(info)
            callback(PortInfo.progress(port))
            with counter_lock:
                processed += 1

        logger.info(f"Scanning {config.target} ports {config.start_port}-{config.end_port} "
                    f"with {pool.max_workers} threads")
        pool.run(scan_one, config.ports())

        if cancel_event.is_set():
            raise ScanCancelledError()
        return processed
