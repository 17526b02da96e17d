"""
Configuration - Settings read from the environment

Values come from environment variables, optionally loaded from a .env file
in the working directory. Entry points call load_settings() once at startup.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from glideway_scanner.models import DEFAULT_TIMEOUT

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """Process-wide scanner settings."""

    timeout: float = DEFAULT_TIMEOUT        # per-connection timeout in seconds
    banner_wait: float = 0.5                # passive wait for an unsolicited banner
    thread_cap: int = 1000                  # hard upper bound on concurrent probes
    udp: bool = True                        # best-effort UDP checks for well-known ports
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 4000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Returns:
            Settings: Settings with defaults for anything not set

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        return cls(
            timeout=_env_float("SCANNER_TIMEOUT", DEFAULT_TIMEOUT),
            banner_wait=_env_float("SCANNER_BANNER_WAIT", 0.5),
            thread_cap=max(1, _env_int("SCANNER_THREAD_CAP", 1000)),
            udp=_env_bool("SCANNER_UDP", True),
            log_level=os.environ.get("SCANNER_LOG_LEVEL", "INFO").upper(),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 4000),
            debug=os.environ.get("FLASK_ENV") == "development",
        )


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Load a .env file if one exists, then read settings from the environment."""
    load_dotenv(dotenv_path)
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the same way for every entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
