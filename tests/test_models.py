import pytest

from glideway_scanner.exceptions import ScanConfigError
from glideway_scanner.models import PROGRESS_PROTOCOL, PortInfo, ScanConfig, ScanProgress


def test_total_ports_is_inclusive():
    config = ScanConfig("127.0.0.1", 1, 100, 10).validate()
    assert config.total_ports == 100
    assert list(config.ports())[0] == 1
    assert list(config.ports())[-1] == 100


def test_single_port_range():
    assert ScanConfig("127.0.0.1", 443, 443, 1).validate().total_ports == 1


@pytest.mark.parametrize("kwargs", [
    dict(target="", start_port=1, end_port=10, max_threads=1),
    dict(target="   ", start_port=1, end_port=10, max_threads=1),
    dict(target="host", start_port=0, end_port=10, max_threads=1),
    dict(target="host", start_port=1, end_port=65536, max_threads=1),
    dict(target="host", start_port=20, end_port=10, max_threads=1),
    dict(target="host", start_port=1, end_port=10, max_threads=0),
    dict(target="host", start_port=1, end_port=10, max_threads=1, timeout=0),
    dict(target="host", start_port=1, end_port=10, max_threads=1, timeout=-1.5),
    dict(target="host", start_port=1, end_port=10, max_threads=1, timeout=float("nan")),
    dict(target="host", start_port=1, end_port=10, max_threads=1, timeout=float("inf")),
    dict(target="host", start_port=1, end_port=10, max_threads=1, timeout="inf"),
    dict(target="host", start_port="1", end_port=10, max_threads=1),
])
def test_invalid_configs_are_rejected(kwargs):
    with pytest.raises(ScanConfigError):
        ScanConfig(**kwargs).validate()


def test_config_error_is_a_value_error():
    with pytest.raises(ValueError):
        ScanConfig("host", 10, 1, 1).validate()


def test_port_info_payload_has_every_field():
    info = PortInfo(port=22, protocol="ssh", service="ssh", product_name="OpenSSH", version="8.9p1", tls=False)
    assert set(info.to_dict()) == {
        "port", "protocol", "service", "product_name", "version", "info", "hostname",
        "operating_system", "device_type", "probe_name", "tls",
    }
    assert info.to_dict()["product_name"] == "OpenSSH"
    assert not info.is_progress


def test_progress_record():
    record = PortInfo.progress(8080)
    assert record.protocol == PROGRESS_PROTOCOL
    assert record.is_progress
    assert record.port == 8080


def test_idle_progress_snapshot():
    assert ScanProgress().to_dict() == {"current_port": 0, "total_ports": 0, "scanned": 0, "status": "idle"}
