"""
Single-flight execution for queue drains.

When a drain is triggered while another one is running, the late caller does
not start a second pass over the queue; it waits for the running one and
receives the same result.
"""
import threading
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger("sync.coalescer")


@dataclass
class InFlightRun:
    """Tracks a run that other callers may join."""
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[Exception] = None
    joined: int = 0


class SingleFlight:
    """
    At most one run per key at a time; concurrent callers share its outcome.

    Usage:
        flight = SingleFlight()
        result, joined = flight.run("drain", queue_drain_fn)
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Max seconds a joining caller waits (None waits forever)
        """
        self._runs: Dict[str, InFlightRun] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def run(self, key: str, fn: Callable[[], Any]) -> Tuple[Any, bool]:
        """
        Run fn under key, or join the run already in flight.

        Returns:
            (result, joined) where joined is True if this caller did not run fn

        Raises:
            TimeoutError: If joining and the running call outlives the timeout
            Exception: Whatever fn raised, for the runner and every joiner
        """
        with self._lock:
            current = self._runs.get(key)
            if current is None:
                current = InFlightRun()
                self._runs[key] = current
                is_runner = True
            else:
                current.joined += 1
                is_runner = False
                logger.debug(f"Joining in-flight run for {key} (joined: {current.joined})")

        if is_runner:
            try:
                current.result = fn()
            except Exception as e:
                current.error = e
            finally:
                with self._lock:
                    self._runs.pop(key, None)
                current.event.set()
            if current.error:
                raise current.error
            return current.result, False

        if not current.event.wait(timeout=self._timeout):
            raise TimeoutError(f"Run for {key} did not finish within {self._timeout}s")
        if current.error:
            raise current.error
        return current.result, True
