# backend/identity_sync/services/retry.py
"""
Retry policy for resolver calls.

Errors are sorted into three kinds:
- transient: timeouts, connection failures, 429 and 5xx → retried with backoff
- permanent: auth failures, not-found, inactive/invalid keys → fail immediately
- unknown: anything else → fail immediately
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import httpx

from identity_sync.services.credentials import ResolverNotConfiguredError
from identity_sync.services.identity_resolver import ResolverHTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERMANENT_STATUS_CODES = {401, 403, 404}
PERMANENT_MESSAGES = ("key not active", "invalid api key", "not found")
TRANSIENT_MESSAGES = ("timeout", "timed out", "econnreset", "connection reset", "enotfound", "name resolution")
TRANSIENT_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ResolverNotConfiguredError):
        return ErrorKind.PERMANENT

    if isinstance(exc, ResolverHTTPError):
        if exc.status_code == 429 or exc.status_code >= 500:
            return ErrorKind.TRANSIENT
        if exc.status_code in PERMANENT_STATUS_CODES:
            return ErrorKind.PERMANENT

    if isinstance(exc, TRANSIENT_TRANSPORT_ERRORS):
        return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(marker in message for marker in PERMANENT_MESSAGES):
        return ErrorKind.PERMANENT
    if any(marker in message for marker in TRANSIENT_MESSAGES):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def is_transient_error(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorKind.TRANSIENT


@dataclass
class RetryPolicy:
    """
    max_retries retries after the first attempt; retry n (0-based) waits
    base_delay * multiplier ** n seconds.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    is_transient: Callable[[BaseException], bool] = is_transient_error

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay * (self.multiplier ** retry_number)

    def should_retry(self, exc: BaseException, retry_number: int) -> bool:
        return retry_number < self.max_retries and self.is_transient(exc)


class RetryExhausted(Exception):
    """Wraps the last error once retries are used up or the error is not retryable."""

    def __init__(self, last_error: BaseException, retries: int):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.retries = retries


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: Optional[str] = None
) -> Tuple[T, int]:
    """
    Run func until it succeeds or the policy gives up.

    Returns:
        (result, retries_used)

    Raises:
        RetryExhausted: carrying the last error and the number of retries made
    """
    retries = 0
    while True:
        try:
            return await func(), retries
        except Exception as e:
            if not policy.should_retry(e, retries):
                raise RetryExhausted(e, retries) from e
            delay = policy.delay_for(retries)
            logger.warning(
                f"🔁 Transient error{f' for {label}' if label else ''}: {e} "
                f"- retry {retries + 1}/{policy.max_retries} in {delay:.1f}s"
            )
            await sleep(delay)
            retries += 1
