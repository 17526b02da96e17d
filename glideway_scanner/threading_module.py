"""
Threading Module - Bounded worker pool for port probes

Ports are fed lazily to a ThreadPoolExecutor so that no more than max_workers
probes are ever in flight, however large the range is. A stop event halts
dispatch: ports not yet submitted are never probed.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_THREAD_CAP = 1000


class ThreadingModule:
    """
    Runs one task per item with a hard limit on concurrency.

    Args:
        max_workers: Requested number of concurrent tasks
        stop_event: Shared event; once set, no further items are dispatched
        thread_cap: Process-wide upper bound applied to max_workers
    """

    def __init__(self, max_workers: int, stop_event: Optional[threading.Event] = None,
                 thread_cap: int = DEFAULT_THREAD_CAP):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_workers > thread_cap:
            logger.warning(f"Thread count reduced from {max_workers} to {thread_cap}")
            max_workers = thread_cap
        self.max_workers = max_workers
        self.stop_event = stop_event or threading.Event()
        self.dispatched = 0

    def stop(self):
        """Signal the pool to stop dispatching."""
        self.stop_event.set()
        logger.info("Stop signal sent to all threads")

    def run(self, task: Callable[[int], None], items: Iterable[int]) -> int:
        """
        Execute task(item) for every item, at most max_workers at a time.

        Args:
            task: Function run once per item
            items: Items to dispatch, consumed lazily

        Returns:
            int: Number of items dispatched

        Raises:
            Exception: The first exception raised by a task, after in-flight tasks finish
        """
        source = iter(items)
        pending: Set[Future] = set()
        failure: Optional[BaseException] = None
        self.dispatched = 0

        def submit_next() -> bool:
            if self.stop_event.is_set() or failure is not None:
                return False
            try:
                item = next(source)
            except StopIteration:
                return False
            pending.add(executor.submit(task, item))
            self.dispatched += 1
            return True

        # Step 1: Fill the pool, then top it up as tasks complete
        logger.debug(f"Starting worker pool with {self.max_workers} threads")
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="probe") as executor:
            while len(pending) < self.max_workers and submit_next():
                pass

            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    exc = future.exception()
                    if exc is not None and failure is None:
                        logger.error(f"Error in thread execution: {exc}")
                        failure = exc
                while len(pending) < self.max_workers and submit_next():
                    pass

        # Step 2: Surface the first task failure to the caller
        logger.debug(f"Worker pool finished after dispatching {self.dispatched} items")
        if failure is not None:
            raise failure
        return self.dispatched
