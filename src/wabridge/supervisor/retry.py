"""
Bounded exponential-backoff retry for session start-up.

Each call to ``run_with_retries`` owns its attempt counter, so the same policy
can drive the initial start and any number of later restarts.
"""

import asyncio
import errno
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from wabridge.errors import FatalStartFailure, TransientStartFailure
from wabridge.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
}

# Substrings of driver/browser error messages that indicate a retryable failure
TRANSIENT_MARKERS = (
    "econnrefused",
    "econnreset",
    "ehostunreach",
    "enetunreach",
    "etimedout",
    "net::err_",
    "target closed",
    "target page, context or browser has been closed",
    "session closed",
    "connection closed",
    "protocol error",
    "timed out",
)

# Driver deadline messages: "Timeout 30000ms exceeded", "Navigation timeout of 30000 ms exceeded"
TIMEOUT_PATTERN = re.compile(r"\btimeout\b[^.]*\bexceeded\b")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a start attempt."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: int = 2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * self.backoff_factor ** (attempt - 1)


def is_transient(error: BaseException) -> bool:
    """Classify a start failure as retryable or not."""
    if isinstance(error, TransientStartFailure):
        return True
    if isinstance(error, FatalStartFailure):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS:
        return True

    message = str(error).lower()
    if TIMEOUT_PATTERN.search(message):
        return True
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def run_with_retries(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
    on_failure: Optional[Callable[[BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds, fails fatally, or attempts run out.

    Args:
        policy: Attempt bound and backoff.
        operation: Zero-argument coroutine function for one attempt.
        on_failure: Called after every failure, before it is classified.
        sleep: Awaitable sleep, replaceable in tests.
        label: Name used in log records.

    Returns:
        The result of the first successful attempt.

    Raises:
        The error of the last attempt made.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if on_failure is not None:
                try:
                    on_failure(e)
                except Exception as hook_error:
                    logger.warning(f"Failure hook for {label} raised: {hook_error}")

            if not is_transient(e):
                logger.error(f"{label} failed fatally on attempt {attempt}: {e}")
                raise

            if attempt >= policy.max_attempts:
                logger.error(
                    f"{label} failed on final attempt {attempt}/{policy.max_attempts}: {e}"
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} attempt {attempt}/{policy.max_attempts} failed ({e}); "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
