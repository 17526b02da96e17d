"""
Exceptions - Error types raised by the scanner

Per-port failures never surface as exceptions; these cover pre-flight
validation, an uninitialized controller, and cancellation of a running scan.
"""


class ScannerError(Exception):
    """Base class for all scanner errors."""


class ScanConfigError(ScannerError, ValueError):
    """Raised when a scan request is malformed (bad range, thread count, target)."""


class ContextNotInitializedError(ScannerError):
    """Raised when a scan is started before the session has an event sink."""

    def __init__(self, message: str = "app context is not initialized"):
        super().__init__(message)


class ScanCancelledError(ScannerError):
    """Raised by the scan driver once its cancellation event has fired."""

    def __init__(self, message: str = "scan cancelled"):
        super().__init__(message)
