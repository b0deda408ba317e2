"""
Retry helper for transient directory connection failures.

Only opening a connection is retried. Searches and writes fail the run on
the first error.
"""

import time
import logging
from typing import Callable, Tuple, Type, TypeVar

from ldap3.core.exceptions import LDAPCommunicationError

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT_ERRORS: Tuple[Type[Exception], ...] = (
    LDAPCommunicationError,
    ConnectionError,
    TimeoutError,
)


class MaxRetriesExceeded(Exception):
    """Raised when every connection attempt failed with a transient error."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_transient(func: Callable[[], T], attempts: int, wait: float, description: str) -> T:
    """
    Call ``func`` until it returns, retrying only on transient socket errors.

    Any other exception propagates from the attempt that raised it.

    Args:
        func: Callable taking no arguments
        attempts: Total number of attempts; values below 1 mean one attempt
        wait: Seconds to sleep between attempts
        description: What is being attempted, for the WARNING logged per retry

    Returns:
        Whatever ``func`` returns

    Raises:
        MaxRetriesExceeded: If the last attempt also failed transiently
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = func()
        except TRANSIENT_ERRORS as e:
            if attempt == attempts:
                raise MaxRetriesExceeded(attempts, e) from e
            logger.warning(f"{description} failed on attempt {attempt} of {attempts} "
                           f"({type(e).__name__}: {e}), retrying in {wait}s")
            time.sleep(wait)
            continue

        if attempt > 1:
            logger.info(f"{description} succeeded on attempt {attempt}")
        return result
