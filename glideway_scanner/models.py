"""
Models - Records exchanged between the scan driver and its caller
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict

from glideway_scanner.exceptions import ScanConfigError

# Protocol label carried by progress-only records
PROGRESS_PROTOCOL = "progress"
UNKNOWN_PROTOCOL = "unknown"

MIN_PORT = 1
MAX_PORT = 65535
DEFAULT_TIMEOUT = 2.0

# Scan states reported through the scan-status event
STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_STOPPING = "stopping"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"
STATUS_COMPLETED = "completed"
STATUS_SCANNING = "scanning"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED, STATUS_ERROR)


@dataclass(frozen=True)
class ScanConfig:
    """Immutable input to one scan invocation."""

    target: str
    start_port: int
    end_port: int
    max_threads: int
    timeout: float = DEFAULT_TIMEOUT
    udp: bool = True

    @property
    def total_ports(self) -> int:
        return self.end_port - self.start_port + 1

    def ports(self) -> range:
        return range(self.start_port, self.end_port + 1)

    def validate(self) -> "ScanConfig":
        """
        Check the request before any scan starts.

        Returns:
            ScanConfig: self, so the call can be chained

        Raises:
            ScanConfigError: If the target, range, thread count or timeout is invalid
        """
        if not isinstance(self.target, str) or not self.target.strip():
            raise ScanConfigError("target host cannot be empty")
        for name in ("start_port", "end_port", "max_threads"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ScanConfigError(f"{name} must be an integer, got {value!r}")
        if not MIN_PORT <= self.start_port <= MAX_PORT:
            raise ScanConfigError(f"start port must be between {MIN_PORT} and {MAX_PORT}: {self.start_port}")
        if not MIN_PORT <= self.end_port <= MAX_PORT:
            raise ScanConfigError(f"end port must be between {MIN_PORT} and {MAX_PORT}: {self.end_port}")
        if self.start_port > self.end_port:
            raise ScanConfigError(f"invalid range (start > end): {self.start_port}-{self.end_port}")
        if self.max_threads < 1:
            raise ScanConfigError("thread count must be at least 1")
        if (isinstance(self.timeout, bool) or not isinstance(self.timeout, (int, float))
                or not math.isfinite(self.timeout) or self.timeout <= 0):
            raise ScanConfigError("timeout must be a positive number of seconds")
        return self


@dataclass(frozen=True)
class PortInfo:
    """
    Result for a single port.

    Open ports carry the fingerprint fields; progress-only records use
    PROGRESS_PROTOCOL and leave everything else empty.
    """

    port: int
    protocol: str = ""
    service: str = ""
    product_name: str = ""
    version: str = ""
    info: str = ""
    hostname: str = ""
    operating_system: str = ""
    device_type: str = ""
    probe_name: str = ""
    tls: bool = False

    @classmethod
    def progress(cls, port: int) -> "PortInfo":
        return cls(port=port, protocol=PROGRESS_PROTOCOL)

    @property
    def is_progress(self) -> bool:
        return self.protocol == PROGRESS_PROTOCOL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanProgress:
    """Point-in-time snapshot returned by ScanSession.get_scan_progress()."""

    current_port: int = 0
    total_ports: int = 0
    scanned: int = 0
    status: str = STATUS_IDLE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
