"""
Bounded retry with exponential backoff that reports its outcome as a value.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from dbsync.exceptions import PersistentError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorKind(str, Enum):
    TRANSIENT = 'transient'
    PERSISTENT = 'persistent'


@dataclass
class Result(Generic[T]):
    """
    Outcome of ``retry_call``.

    Attributes:
        ok: True if an attempt succeeded
        value: Return value of the successful attempt
        error: Last error when every attempt failed
        error_kind: Classification of the last error
        attempts: Number of attempts made
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retrying after 0-based ``attempt``: base, 2*base, 4*base..."""
    return base_delay * (2 ** attempt)


def retry_call(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = 'operation',
    log: Optional[logging.Logger] = None,
) -> Result[T]:
    """
    Run ``operation`` up to ``max_attempts`` times.

    Errors classified as persistent stop the retries early. There is no
    sleep after the last attempt.

    Args:
        operation: Callable taking no arguments
        max_attempts: Upper bound on attempts (at least 1)
        base_delay: Delay in seconds before the first retry
        sleep: Sleep function (injectable for tests)
        description: Label used in log messages
        log: Injected logger

    Returns:
        Result with the value of the first successful attempt, or the last
        error on exhaustion
    """
    log = log or logger
    max_attempts = max(1, int(max_attempts))
    last_error: Optional[Exception] = None
    last_kind: Optional[ErrorKind] = None

    for attempt in range(max_attempts):
        try:
            return Result(ok=True, value=operation(), attempts=attempt + 1)
        except Exception as e:
            last_error = e
            error_class = classify_error(e)
            last_kind = ErrorKind.PERSISTENT if error_class is PersistentError else ErrorKind.TRANSIENT

            if last_kind == ErrorKind.PERSISTENT:
                log.warning(f"{description}: persistent error on attempt {attempt + 1}/{max_attempts}: {e}")
                return Result(ok=False, error=e, error_kind=last_kind, attempts=attempt + 1)

            if attempt + 1 >= max_attempts:
                break

            delay = backoff_delay(base_delay, attempt)
            log.warning(
                f"{description}: attempt {attempt + 1}/{max_attempts} failed ({e}), retrying in {delay:.2f}s"
            )
            if delay > 0:
                sleep(delay)

    log.error(f"{description}: giving up after {max_attempts} attempts: {last_error}")
    return Result(ok=False, error=last_error, error_kind=last_kind, attempts=max_attempts)
