"""
Events - Sinks for scan events

The scan controller reports everything it does as a named event with a
JSON-serialisable payload. Sinks are fire-and-forget: emit() must not block
the scanning threads.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)

EVENT_SCAN_STATUS = "scan-status"
EVENT_SCAN_PROGRESS = "scan-progress"
EVENT_SCAN_ERROR = "scan-error"
EVENT_SCAN_COMPLETE = "scan-complete"
EVENT_PORT_FOUND = "port-found"


class EventEmitter:
    """Base class for event sinks."""

    def emit(self, name: str, payload: Any) -> None:
        raise NotImplementedError


class CallbackEmitter(EventEmitter):
    """Forwards every event to a plain function."""

    def __init__(self, callback: Callable[[str, Any], None]):
        self.callback = callback

    def emit(self, name: str, payload: Any) -> None:
        self.callback(name, payload)


class LoggingEmitter(EventEmitter):
    def emit(self, name: str, payload: Any) -> None:
        logger.debug(f"{name}: {payload}")


class MultiEmitter(EventEmitter):
    """Fans each event out to several sinks."""

    def __init__(self, *emitters: EventEmitter):
        self.emitters = list(emitters)

    def emit(self, name: str, payload: Any) -> None:
        for emitter in self.emitters:
            emitter.emit(name, payload)


class EventBuffer(EventEmitter):
    """
    Keeps recent events in memory for clients that poll.

    Every event gets an increasing index; since(index) returns the events a
    client has not seen yet. Only the newest maxlen events are kept.
    """

    def __init__(self, maxlen: int = 10000):
        self._lock = threading.Lock()
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._next_index = 0

    def emit(self, name: str, payload: Any) -> None:
        with self._lock:
            self._events.append({
                'index': self._next_index,
                'event': name,
                'payload': payload,
                'timestamp': datetime.now().isoformat(),
            })
            self._next_index += 1

    def since(self, index: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """
        Return events with an index of at least ``index``.

        Returns:
            Tuple[List[Dict[str, Any]], int]: The events and the index to poll from next
        """
        with self._lock:
            events = [event for event in self._events if event['index'] >= index]
            return events, self._next_index

    def names(self) -> List[str]:
        with self._lock:
            return [event['event'] for event in self._events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
