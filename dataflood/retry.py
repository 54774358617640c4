from collections.abc import Callable
import time
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def run_with_retries(
    fn: Callable[[int], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn(attempt)`` until it returns, backing off linearly between attempts."""
    last_error: Exception | None = None
    attempt = 0

    while attempt <= max_retries:
        attempt += 1
        try:
            return fn(attempt)
        except Exception as exc:
            last_error = exc
            if should_retry is not None and not should_retry(exc):
                break
            if attempt <= max_retries and backoff_seconds > 0:
                sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error), attempts=attempt) from last_error
