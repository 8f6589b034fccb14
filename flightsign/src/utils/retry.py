import time
from typing import Callable, Optional, Tuple, Type, TypeVar

import requests

from flightsign.logger import get_console

T = TypeVar("T")

console = get_console()

# Failures worth another attempt: dropped connections, timeouts and 5xx/429
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    requests.ConnectionError,
    requests.Timeout,
)


class TransientHTTPError(Exception):
    """Raised for HTTP responses that may succeed when retried (429, 5xx)"""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based), doubling each time"""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def retry_call(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS
    + (TransientHTTPError,),
    sleep: Callable[[float], None] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """Call `fn` up to `attempts` times, backing off exponentially between tries.

    Only exceptions listed in `retry_on` are retried; anything else propagates
    immediately. The last error is re-raised once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            label = description or getattr(fn, "__name__", "call")
            console.log(
                f"[yellow]{label} failed (attempt {attempt}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            sleep(delay)

    raise AssertionError("unreachable")
