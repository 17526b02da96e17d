"""
Flask Web Interface - JSON API in front of the scan controller

This module is responsible for:
1. Creating and configuring the Flask application
2. Translating HTTP requests into ScanSession calls
3. Letting browser clients poll scan events incrementally
"""

import logging
from typing import Optional

from flask import Flask, jsonify, request

from glideway_scanner.config import Settings
from glideway_scanner.events import EventBuffer, LoggingEmitter, MultiEmitter
from glideway_scanner.exceptions import ScannerError
from glideway_scanner.fingerprint import ServiceFingerprinter
from glideway_scanner.scan_controller import ScanSession
from glideway_scanner.scanner_engine import ScannerEngine

logger = logging.getLogger(__name__)


def build_session(settings: Settings) -> ScanSession:
    """Create a ScanSession configured from settings."""
    engine = ScannerEngine(
        fingerprinter=ServiceFingerprinter(banner_wait=settings.banner_wait),
        thread_cap=settings.thread_cap,
    )
    return ScanSession(engine=engine, default_timeout=settings.timeout, udp=settings.udp)


def create_app(session: Optional[ScanSession] = None,
               settings: Optional[Settings] = None,
               events: Optional[EventBuffer] = None) -> Flask:
    """
    Create the Flask app.

    Args:
        session: Scan controller to expose (built from settings if omitted)
        settings: Scanner settings (defaults if omitted)
        events: Buffer the session's events are recorded in

    Returns:
        Flask: The configured application
    """
    # Step 1: Wire the scan session to the event buffer
    settings = settings or Settings()
    session = session or build_session(settings)
    events = events or EventBuffer()
    session.startup(MultiEmitter(events, LoggingEmitter()))

    # Step 2: Create the Flask app and register the API routes
    app = Flask(__name__)
    app.config['SCAN_SESSION'] = session
    app.config['SCAN_EVENTS'] = events

    @app.route('/api/scan/start', methods=['POST'])
    def api_start_scan():
        """Start a scan; any scan already running is superseded."""
        data = request.get_json(silent=True)
        if not data or 'target' not in data:
            return jsonify({'error': 'Missing target host'}), 400

        try:
            start_port = int(data.get('start_port', 1))
            end_port = int(data.get('end_port', 1024))
            threads = int(data.get('threads', 100))
            timeout = float(data['timeout']) if data.get('timeout') is not None else None
        except (TypeError, ValueError):
            return jsonify({'error': 'Ports, threads and timeout must be numbers'}), 400

        try:
            session.start_scan(str(data['target']), start_port, end_port, threads, timeout)
        except ScannerError as e:
            return jsonify({'error': str(e)}), 400

        return jsonify({'status': session.get_scan_status(), 'total_ports': end_port - start_port + 1})

    @app.route('/api/scan/stop', methods=['POST'])
    def api_stop_scan():
        session.stop_scan()
        return jsonify({'status': session.get_scan_status()})

    @app.route('/api/scan/status', methods=['GET'])
    def api_scan_status():
        return jsonify({'status': session.get_scan_status()})

    @app.route('/api/scan/progress', methods=['GET'])
    def api_scan_progress():
        return jsonify(session.get_scan_progress().to_dict())

    @app.route('/api/events', methods=['GET'])
    def api_events():
        """Return the events recorded since the client's last poll."""
        try:
            since = int(request.args.get('since', 0))
        except ValueError:
            return jsonify({'error': 'since must be an integer'}), 400
        new_events, next_index = events.since(since)
        return jsonify({'events': new_events, 'next': next_index})

    return app


def run(settings: Settings):
    """
    Run the Flask web application.

    Args:
        settings: Scanner settings, including the address to listen on
    """
    app = create_app(settings=settings)
    logger.info(f"Starting scanner API on {settings.host}:{settings.port}")
    app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)
