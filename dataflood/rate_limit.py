"""Per-connector request gate.

Every upstream call holds an in-flight slot for its whole duration, and call
starts on one limiter are spaced by ``delay_seconds`` through a pyrate-limiter
bucket allowing one acquisition per delay window.
"""

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import threading

from pyrate_limiter import Duration, InMemoryBucket, Limiter, Rate


logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, name: str, *, delay_seconds: float, max_in_flight: int = 1) -> None:
        if delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {delay_seconds}")
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")

        self.name = name
        self.delay_seconds = delay_seconds
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._lock = threading.Lock()
        self.calls = 0

        self._bucket: InMemoryBucket | None = None
        self._limiter: Limiter | None = None
        if delay_seconds > 0:
            interval_ms = max(1, round(delay_seconds * 1000))
            self._bucket = InMemoryBucket([Rate(1, interval_ms)])
            self._limiter = Limiter(self._bucket, max_delay=Duration.MINUTE, raise_when_fail=True)

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._slots.acquire()
        try:
            if self._limiter is not None:
                # Blocks until the bucket has room again.
                self._limiter.try_acquire(self.name)
            with self._lock:
                self.calls += 1
            yield
        finally:
            # Released on success, HTTP error and timeout alike.
            self._slots.release()

    def close(self) -> None:
        """Detach the bucket from pyrate-limiter's leak thread."""
        if self._limiter is None:
            return
        self._limiter.dispose(self._bucket)
        self._limiter = None
        self._bucket = None
        logger.debug("rate limiter closed", extra={"limiter": self.name})
