"""
Terminal interface for the port scanner

Runs one scan through a ScanSession, shows a live progress bar fed by
scan-progress events, and prints the identified ports when the scan ends.
Ctrl-C stops the scan cleanly.
"""

import argparse
import logging
import sys
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import colorama
from colorama import Fore
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table
from rich.text import Text

from glideway_scanner import __version__
from glideway_scanner.config import Settings, configure_logging, load_settings
from glideway_scanner.events import (
    EVENT_PORT_FOUND,
    EVENT_SCAN_ERROR,
    EVENT_SCAN_PROGRESS,
    EVENT_SCAN_STATUS,
    CallbackEmitter,
)
from glideway_scanner.exceptions import ScannerError
from glideway_scanner.fingerprint import ServiceFingerprinter
from glideway_scanner.models import MAX_PORT, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_ERROR
from glideway_scanner.scan_controller import ScanSession
from glideway_scanner.scanner_engine import ScannerEngine

# Initialize colorama for cross-platform color support
colorama.init(autoreset=True)

logger = logging.getLogger(__name__)

DEFAULT_RANGE = "1-1024"
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def parse_range(port_range: str) -> Tuple[int, int]:
    """
    Parse "START-END" or a single port into an inclusive range.

    Raises:
        ValueError: If the text is not a port or a port range
    """
    port_range = (port_range or DEFAULT_RANGE).strip()
    try:
        if '-' in port_range:
            start, end = (int(part) for part in port_range.split('-', 1))
        else:
            start = end = int(port_range)
    except ValueError:
        raise ValueError(f"Invalid port range: {port_range}")
    return start, end


class ScanReporter:
    """Collects scan events and mirrors them onto a rich progress bar."""

    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id
        self.found: List[Dict[str, Any]] = []
        self.status: Optional[str] = None
        self.error: str = ""
        self.finished = threading.Event()

    def handle(self, name: str, payload: Any) -> None:
        if name == EVENT_SCAN_PROGRESS and isinstance(payload, dict) and 'scanned' in payload:
            self.progress.update(self.task_id, completed=payload['scanned'])
        elif name == EVENT_PORT_FOUND:
            self.found.append(payload)
            self.progress.console.print(
                f"{Fore.GREEN}[OPEN]{Fore.RESET} {payload['port']}/{payload['protocol']} {payload['product_name']}"
            )
        elif name == EVENT_SCAN_ERROR:
            self.error = payload
        elif name == EVENT_SCAN_STATUS and payload in (STATUS_COMPLETED, STATUS_CANCELLED, STATUS_ERROR):
            self.status = payload
            self.finished.set()


class PortScanner:
    """Main port scanner class that orchestrates a terminal scan."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.console = Console()
        engine = ScannerEngine(
            fingerprinter=ServiceFingerprinter(banner_wait=settings.banner_wait),
            thread_cap=settings.thread_cap,
        )
        self.session = ScanSession(engine=engine, default_timeout=settings.timeout, udp=settings.udp)

    def display_results(self, target: str, found: List[Dict[str, Any]], start_time: datetime, status: str):
        """Print the identified ports and a short summary panel."""
        if found:
            table = Table(title=f"Open ports on {target}")
            for column in ("Port", "Protocol", "Product", "Version", "Info", "Hostname", "OS", "Device", "TLS"):
                table.add_column(column)
            for item in sorted(found, key=lambda entry: entry['port']):
                table.add_row(
                    str(item['port']),
                    item['protocol'],
                    item['product_name'],
                    item['version'],
                    item['info'],
                    item['hostname'],
                    item['operating_system'],
                    item['device_type'],
                    "yes" if item['tls'] else "",
                )
            self.console.print(table)
        else:
            print(f"{Fore.YELLOW}[WARNING] No open ports found on {target}")

        duration = (datetime.now() - start_time).total_seconds()
        summary = Text()
        summary.append("Target: ", style="bold")
        summary.append(f"{target}\n", style="green")
        summary.append("Status: ", style="bold")
        summary.append(f"{status}\n", style="green" if status == STATUS_COMPLETED else "red")
        summary.append("Duration: ", style="bold")
        summary.append(f"{duration:.2f} seconds\n", style="green")
        summary.append("Open Ports: ", style="bold")
        summary.append(f"{len(found)}", style="red")
        self.console.print(Panel(summary, title="Scan Details"))

    def run_scan(self, target: str, start_port: int, end_port: int, threads: int,
                 timeout: Optional[float] = None) -> int:
        """
        Run one scan to completion or until interrupted.

        Returns:
            int: Process exit code
        """
        start_time = datetime.now()
        print(f"{Fore.CYAN}[INFO] Scanning {target} ports {start_port}-{end_port} with {threads} threads")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
        ) as progress:
            task_id = progress.add_task("[cyan]Scanning ports...", total=end_port - start_port + 1)
            reporter = ScanReporter(progress, task_id)
            self.session.startup(CallbackEmitter(reporter.handle))

            try:
                self.session.start_scan(target, start_port, end_port, threads, timeout)
            except ScannerError as e:
                print(f"{Fore.RED}[ERROR] {e}")
                return EXIT_ERROR

            try:
                while not reporter.finished.wait(0.2):
                    pass
            except KeyboardInterrupt:
                print(f"\n{Fore.RED}[INFO] Scan interrupted by user, stopping...")
                self.session.stop_scan()
                reporter.finished.wait()
            self.session.wait()

        if reporter.status == STATUS_ERROR:
            print(f"{Fore.RED}[ERROR] Scan failed: {reporter.error}")
            return EXIT_ERROR

        self.display_results(target, reporter.found, start_time, reporter.status)
        return EXIT_CANCELLED if reporter.status == STATUS_CANCELLED else EXIT_OK


def setup_args(argv=None) -> argparse.Namespace:
    """
    Setup and parse command line arguments.

    Returns:
        Namespace: The parsed command line arguments
    """
    parser = argparse.ArgumentParser(
        description="GlideWay port scanner - concurrent port scanning with service fingerprinting",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument("-t", "--target", required=True, help="Target host to scan (IP address or hostname)")
    parser.add_argument("-p", "--ports", default=DEFAULT_RANGE,
                        help=f"Port range to scan, START-END or a single port. Default: {DEFAULT_RANGE}")
    parser.add_argument("-n", "--threads", type=int, default=100,
                        help="Maximum concurrent probes. Default: 100")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Per-connection timeout in seconds. Default: SCANNER_TIMEOUT or 2.0")
    parser.add_argument("--no-udp", action="store_true", help="Skip the UDP checks for DNS, NTP and SNMP")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--version", action="version", version=f"GlideWay port scanner v{__version__}")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point of the application."""
    args = setup_args(argv)
    settings = load_settings()
    if args.no_udp:
        settings = replace(settings, udp=False)

    configure_logging("DEBUG" if args.verbose else "WARNING")

    try:
        start_port, end_port = parse_range(args.ports)
    except ValueError as e:
        print(f"{Fore.RED}[ERROR] {e}")
        return EXIT_ERROR
    if end_port > MAX_PORT:
        print(f"{Fore.RED}[ERROR] Ports must be between 1 and {MAX_PORT}")
        return EXIT_ERROR
    if args.threads > settings.thread_cap:
        print(f"{Fore.YELLOW}[WARNING] Thread count will be limited to {settings.thread_cap}")

    scanner = PortScanner(settings)
    return scanner.run_scan(args.target, start_port, end_port, args.threads, args.timeout)


if __name__ == "__main__":
    sys.exit(main())
