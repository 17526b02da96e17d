"""
Scan Controller - Start, stop and query one scan at a time

A ScanSession owns the state of the single active scan: its ScanControl
(cancellation event, counters, connection tracker) and a generation token.
Every callback coming back from the scan threads is checked against the
current generation, so a scan that was superseded by a newer one can never
touch the newer scan's counters or events.

All session state lives behind one lock. Queries only hold it long enough to
copy a few fields.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from glideway_scanner.events import (
    EVENT_PORT_FOUND,
    EVENT_SCAN_COMPLETE,
    EVENT_SCAN_ERROR,
    EVENT_SCAN_PROGRESS,
    EVENT_SCAN_STATUS,
    EventEmitter,
)
from glideway_scanner.exceptions import ContextNotInitializedError, ScanCancelledError
from glideway_scanner.models import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RUNNING,
    STATUS_SCANNING,
    STATUS_STOPPING,
    PortInfo,
    ScanConfig,
    ScanProgress,
)
from glideway_scanner.probe import ConnectionTracker
from glideway_scanner.scanner_engine import ScannerEngine

logger = logging.getLogger(__name__)


@dataclass
class ScanControl:
    """Live handle of one running scan."""

    generation: int
    config: ScanConfig
    total_ports: int
    cancel_event: threading.Event = field(default_factory=threading.Event)
    tracker: ConnectionTracker = field(default_factory=ConnectionTracker)
    scanned: int = 0
    last_port: int = 0
    thread: Optional[threading.Thread] = None

    def cancel(self) -> None:
        self.cancel_event.set()
        self.tracker.close_all()


@dataclass(frozen=True)
class ScanOutcome:
    """What the scan task body returns; never raised."""

    status: str
    error: str = ""


class ScanSession:
    """
    Caller-owned controller for port scans.

    Args:
        engine: Scan driver (defaults to a ScannerEngine)
        emitter: Event sink; may also be supplied later through startup()
        default_timeout: Per-connection timeout used when start_scan() gets none
        udp: Whether scans include the best-effort UDP checks
    """

    def __init__(self, engine: Optional[ScannerEngine] = None,
                 emitter: Optional[EventEmitter] = None,
                 default_timeout: float = 2.0,
                 udp: bool = True):
        self.engine = engine or ScannerEngine()
        self.emitter = emitter
        self.default_timeout = default_timeout
        self.udp = udp
        self._lock = threading.Lock()
        self._control: Optional[ScanControl] = None
        self._generation = 0

    def startup(self, emitter: EventEmitter) -> None:
        """Attach the event sink; scans cannot start before this."""
        self.emitter = emitter

    def _emit(self, name: str, payload: Any) -> None:
        try:
            self.emitter.emit(name, payload)
        except Exception:
            logger.exception(f"Event sink failed to deliver {name}")

    def _is_current(self, control: ScanControl) -> bool:
        return self._control is control and control.generation == self._generation

    def start_scan(self, target: str, start_port: int, end_port: int, max_threads: int,
                   timeout: Optional[float] = None) -> None:
        """
        Validate the request and start scanning in the background.

        Returns immediately. A scan that is still running is superseded: it is
        cancelled and reported as cancelled before the new one starts.

        Raises:
            ContextNotInitializedError: If startup() was never called
            ScanConfigError: If the target, range, thread count or timeout is invalid
        """
        if self.emitter is None:
            raise ContextNotInitializedError()

        # Step 1: Validate before touching any session state
        config = ScanConfig(
            target=target.strip() if isinstance(target, str) else target,
            start_port=start_port,
            end_port=end_port,
            max_threads=max_threads,
            timeout=self.default_timeout if timeout is None else timeout,
            udp=self.udp,
        ).validate()

        # Step 2: Cancel and report the scan being superseded
        with self._lock:
            previous = self._control
            if previous is not None:
                logger.info(f"Superseding running scan of {previous.config.target}")
                previous.cancel()
                self._emit(EVENT_SCAN_STATUS, STATUS_CANCELLED)
                self._emit(EVENT_SCAN_PROGRESS, {
                    'current_port': previous.scanned,
                    'total_ports': previous.total_ports,
                    'status': STATUS_CANCELLED,
                })

            # Step 3: Install the new control under the next generation
            self._generation += 1
            control = ScanControl(generation=self._generation, config=config,
                                  total_ports=config.total_ports)
            self._control = control

            self._emit(EVENT_SCAN_STATUS, STATUS_RUNNING)
            self._emit(EVENT_SCAN_PROGRESS, {
                'current_port': config.start_port,
                'total_ports': control.total_ports,
                'status': STATUS_SCANNING,
            })

            # Step 4: Run the scan in the background
            control.thread = threading.Thread(
                target=self._run,
                args=(control,),
                name=f"scan-{control.generation}",
                daemon=True
            )
            control.thread.start()

        logger.info(f"Scan {control.generation} started: {config.target} "
                    f"{config.start_port}-{config.end_port} ({control.total_ports} ports)")

    def stop_scan(self) -> None:
        """Cancel the running scan; does nothing when idle."""
        with self._lock:
            control = self._control
            if control is None or control.cancel_event.is_set():
                return
            control.cancel()
            logger.info(f"Stopping scan {control.generation} after {control.scanned} ports")
            self._emit(EVENT_SCAN_STATUS, STATUS_STOPPING)
            self._emit(EVENT_SCAN_PROGRESS, {
                'current_port': control.scanned,
                'total_ports': control.total_ports,
                'status': STATUS_STOPPING,
            })

    def get_scan_status(self) -> str:
        with self._lock:
            return STATUS_RUNNING if self._control is not None else STATUS_IDLE

    def get_scan_progress(self) -> ScanProgress:
        with self._lock:
            control = self._control
            if control is None:
                return ScanProgress(status=STATUS_IDLE)
            return ScanProgress(
                current_port=control.scanned,
                total_ports=control.total_ports,
                scanned=control.scanned,
                status=STATUS_RUNNING,
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the current scan task has finished.

        Returns:
            bool: True if no scan is running any more
        """
        with self._lock:
            control = self._control
        if control is not None and control.thread is not None:
            control.thread.join(timeout)
            return not control.thread.is_alive()
        return True

    def _on_port(self, control: ScanControl, port_info: PortInfo) -> None:
        """Handle one record from the scan threads."""
        with self._lock:
            # Stale generation or cancelled scan: drop the record
            if not self._is_current(control) or control.cancel_event.is_set():
                return

            if port_info.is_progress:
                if control.scanned >= control.total_ports:
                    return
                control.scanned += 1
                control.last_port = port_info.port
                self._emit(EVENT_SCAN_PROGRESS, {
                    'current_port': port_info.port,
                    'total_ports': control.total_ports,
                    'scanned': control.scanned,
                    'status': STATUS_SCANNING,
                })
            else:
                self._emit(EVENT_PORT_FOUND, port_info.to_dict())

    def _execute(self, control: ScanControl) -> ScanOutcome:
        """Run the scan and translate how it ended into an outcome."""
        try:
            self.engine.scan_ports_combined(
                control.config,
                lambda port_info: self._on_port(control, port_info),
                control.cancel_event,
                control.tracker,
            )
        except ScanCancelledError:
            return ScanOutcome(STATUS_CANCELLED)
        except Exception as e:
            logger.exception(f"Scan {control.generation} failed")
            return ScanOutcome(STATUS_ERROR, error=str(e) or e.__class__.__name__)

        if control.cancel_event.is_set():
            return ScanOutcome(STATUS_CANCELLED)
        return ScanOutcome(STATUS_COMPLETED)

    def _run(self, control: ScanControl) -> None:
        """Body of the background scan thread."""
        outcome = ScanOutcome(STATUS_ERROR, error="Internal error occurred")
        try:
            outcome = self._execute(control)
        finally:
            self._finish(control, outcome)

    def _finish(self, control: ScanControl, outcome: ScanOutcome) -> None:
        with self._lock:
            control.tracker.close_all()
            if not self._is_current(control):
                # Superseded: the replacing scan already reported this one as cancelled
                logger.debug(f"Scan {control.generation} ended after being superseded")
                return

            try:
                if outcome.status == STATUS_CANCELLED:
                    self._emit(EVENT_SCAN_STATUS, STATUS_CANCELLED)
                    self._emit(EVENT_SCAN_PROGRESS, {
                        'current_port': control.scanned,
                        'total_ports': control.total_ports,
                        'status': STATUS_CANCELLED,
                    })
                elif outcome.status == STATUS_ERROR:
                    self._emit(EVENT_SCAN_ERROR, outcome.error)
                    self._emit(EVENT_SCAN_STATUS, STATUS_ERROR)
                    self._emit(EVENT_SCAN_PROGRESS, {
                        'current_port': control.scanned,
                        'total_ports': control.total_ports,
                        'status': STATUS_ERROR,
                    })
                else:
                    self._emit(EVENT_SCAN_COMPLETE, {
                        'total_ports': control.total_ports,
                        'scanned': control.scanned,
                    })
                    self._emit(EVENT_SCAN_STATUS, STATUS_COMPLETED)
                    self._emit(EVENT_SCAN_PROGRESS, {
                        'current_port': control.config.end_port,
                        'total_ports': control.total_ports,
                        'status': STATUS_COMPLETED,
                    })
            finally:
                self._control = None
                self._emit(EVENT_SCAN_STATUS, STATUS_IDLE)

        logger.info(f"Scan {control.generation} {outcome.status}: "
                    f"{control.scanned}/{control.total_ports} ports scanned")
