"""
Main entry point for the port scanner web API

Runs the Flask JSON API that starts, stops and reports on port scans.
Settings come from environment variables, optionally loaded from a .env file.
"""

from glideway_scanner.config import configure_logging, load_settings
from glideway_scanner.flask_web_interface import run

if __name__ == "__main__":
    # Step 1: Load settings; host, port and debug mode come from HOST, PORT and FLASK_ENV
    settings = load_settings()
    configure_logging(settings.log_level)
    # Step 2: Start the web API
    run(settings)
