import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional
from datetime import datetime

from mailpipe.datetime_utils import isoformat_utc, utcnow
from mailpipe.exceptions import AlreadyRunning
from mailpipe.logging_config import get_logger

logger = get_logger(__name__)


class SingleFlight:
    """
    Keyed in-flight set: at most one holder per key at a time.

    Unlike a blocking lock, a second caller for the same key is refused
    immediately with AlreadyRunning. The internal mutex only guards the set
    and is never held while the caller's work runs.
    """

    def __init__(self, name: str = "single_flight"):
        self.name = name
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight: Dict[str, datetime] = {}

    def try_acquire(self, key: str) -> bool:
        """Mark `key` in flight. Returns False if it already is."""
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight[key] = utcnow()
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.pop(key, None)
            if not self._in_flight:
                self._idle.notify_all()

    @contextmanager
    def hold(self, key: str):
        """
        Context manager holding `key` for the duration of the block.

        Raises:
            AlreadyRunning: If `key` is already held
        """
        if not self.try_acquire(key):
            logger.warning("Operation already in flight", registry=self.name, key=key)
            raise AlreadyRunning(key)
        try:
            yield
        finally:
            self.release(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def held_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._in_flight)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is in flight. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def get_status(self) -> dict:
        """Snapshot of what is in flight and for how long."""
        now = utcnow()
        with self._lock:
            return {
                "registry": self.name,
                "in_flight": {
                    key: {
                        "since": isoformat_utc(started),
                        "held_for_seconds": (now - started).total_seconds(),
                    }
                    for key, started in self._in_flight.items()
                },
            }
