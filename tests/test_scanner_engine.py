import threading

import pytest

from conftest import TLS_HOSTNAME, banner_handler, http_handler, silent_handler
from glideway_scanner.exceptions import ScanCancelledError, ScannerError
from glideway_scanner.fingerprint import ServiceFingerprinter
from glideway_scanner.models import MAX_PORT, ScanConfig
from glideway_scanner.scanner_engine import ScannerEngine, resolve_target


@pytest.fixture
def engine():
    return ScannerEngine(fingerprinter=ServiceFingerprinter(banner_wait=0.2))


def _config(port, timeout=1.0, threads=10):
    return ScanConfig("127.0.0.1", port, port, threads, timeout=timeout, udp=False).validate()


class Collector:
    def __init__(self):
        self.lock = threading.Lock()
        self.found = []
        self.progress = []

    def __call__(self, info):
        with self.lock:
            if info.is_progress:
                self.progress.append(info.port)
            else:
                self.found.append(info)


def test_resolve_ip_literal():
    assert resolve_target(" 127.0.0.1 ") == "127.0.0.1"


def test_resolve_localhost():
    assert resolve_target("localhost") in ("127.0.0.1", "::1")


def test_unresolvable_target_raises():
    with pytest.raises(ScannerError, match="Failed to resolve"):
        resolve_target("no-such-host.invalid")


def test_range_reports_open_port_and_every_progress(engine, start_server):
    server = start_server(http_handler)
    start = max(1, server.port - 50)
    end = min(MAX_PORT, start + 99)
    config = ScanConfig("127.0.0.1", start, end, 20, timeout=1.0, udp=False).validate()
    collect = Collector()

    processed = engine.scan_ports_combined(config, collect)

    assert processed == config.total_ports
    assert sorted(collect.progress) == list(config.ports())
    http = [info for info in collect.found if info.port == server.port]
    assert len(http) == 1
    assert http[0].protocol == "http"
    assert http[0].product_name == "nginx"
    assert http[0].version == "1.18.0"
    assert http[0].tls is False


def test_banner_service(engine, start_server):
    server = start_server(banner_handler(b"220 (vsFTPd 3.0.5)\r\n"))
    collect = Collector()
    engine.scan_ports_combined(_config(server.port), collect)
    assert len(collect.found) == 1
    info = collect.found[0]
    assert info.protocol == "ftp"
    assert info.product_name == "vsftpd"
    assert info.probe_name == "NULL"


def test_silent_listener_is_reported_unknown(engine, start_server):
    server = start_server(silent_handler)
    collect = Collector()
    engine.scan_ports_combined(_config(server.port, timeout=0.6), collect)
    assert [info.protocol for info in collect.found] == ["unknown"]
    assert collect.progress == [server.port]


def test_tls_only_service_is_identified(engine, start_server, tls_http_handler):
    server = start_server(tls_http_handler)
    collect = Collector()
    engine.scan_ports_combined(_config(server.port), collect)
    assert len(collect.found) == 1
    info = collect.found[0]
    assert info.tls is True
    assert info.protocol == "http"
    assert info.hostname == TLS_HOSTNAME


def test_closed_port_only_reports_progress(engine, closed_port):
    collect = Collector()
    assert engine.scan_ports_combined(_config(closed_port), collect) == 1
    assert collect.found == []
    assert collect.progress == [closed_port]


def test_cancelled_scan_raises(engine):
    cancel = threading.Event()
    collect = Collector()

    def callback(info):
        collect(info)
        cancel.set()

    config = ScanConfig("127.0.0.1", 1, 2000, 4, timeout=0.5, udp=False).validate()
    with pytest.raises(ScanCancelledError):
        engine.scan_ports_combined(config, callback, cancel_event=cancel)
    # In-flight probes that finish after the cancel report nothing
    assert len(collect.progress) <= 4


def test_unresolvable_target_fails_the_scan(engine):
    config = ScanConfig("no-such-host.invalid", 1, 10, 2, udp=False).validate()
    with pytest.raises(ScannerError):
        engine.scan_ports_combined(config, Collector())


def test_udp_service_is_reported(engine, snmp_responder):
    config = ScanConfig("127.0.0.1", snmp_responder.port, snmp_responder.port, 1,
                        timeout=1.0, udp=True).validate()
    collect = Collector()
    engine.scan_ports_combined(config, collect)

    assert collect.progress == [snmp_responder.port]
    assert len(collect.found) == 1
    info = collect.found[0]
    assert info.protocol == "snmp"
    assert info.hostname == "box1"
    assert info.operating_system == "Linux"
    assert info.version == "5.15.0-91"
    assert info.probe_name == "SNMPv1GetRequest"
    assert info.tls is False


def test_udp_checks_can_be_disabled(engine, snmp_responder):
    collect = Collector()
    engine.scan_ports_combined(_config(snmp_responder.port), collect)
    assert collect.found == []
    assert snmp_responder.received == []
