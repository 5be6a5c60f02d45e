# statement_analyzer/retry.py
import asyncio
import enum
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from .errors import MalformedResponseError, NotBankStatementError, ProviderError

logger = logging.getLogger("statement-analyzer.retry")

T = TypeVar("T")


class FailureKind(enum.Enum):
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK_ERROR = "network_error"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not FailureKind.FATAL


STATUS_KINDS = {
    429: FailureKind.RATE_LIMITED,
    503: FailureKind.OVERLOADED,
    504: FailureKind.TIMEOUT,
}

# Checked in order against the lower-cased message
MESSAGE_KINDS = (
    ("429", FailureKind.RATE_LIMITED),
    ("rate limit", FailureKind.RATE_LIMITED),
    ("resource_exhausted", FailureKind.RATE_LIMITED),
    ("503", FailureKind.OVERLOADED),
    ("overloaded", FailureKind.OVERLOADED),
    ("unavailable", FailureKind.OVERLOADED),
    ("504", FailureKind.TIMEOUT),
    ("deadline", FailureKind.TIMEOUT),
    ("timed out", FailureKind.TIMEOUT),
    ("json", FailureKind.MALFORMED_RESPONSE),
    ("fetch failed", FailureKind.NETWORK_ERROR),
    ("sending request", FailureKind.NETWORK_ERROR),
    ("econnreset", FailureKind.NETWORK_ERROR),
    ("etimedout", FailureKind.NETWORK_ERROR),
    ("network", FailureKind.NETWORK_ERROR),
)


def classify_failure(exc: BaseException) -> FailureKind:
    """Map any error from an extraction attempt onto a FailureKind."""
    if isinstance(exc, NotBankStatementError):
        return FailureKind.FATAL
    if isinstance(exc, MalformedResponseError):
        return FailureKind.MALFORMED_RESPONSE
    if isinstance(exc, ProviderError) and exc.status in STATUS_KINDS:
        return STATUS_KINDS[exc.status]
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in STATUS_KINDS:
        return STATUS_KINDS[exc.response.status_code]
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return FailureKind.NETWORK_ERROR
    if isinstance(exc, ProviderError) and exc.status in (400, 401, 403, 404):
        return FailureKind.FATAL

    msg = str(exc).lower()
    for needle, kind in MESSAGE_KINDS:
        if needle in msg:
            return kind
    return FailureKind.FATAL


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    label: str = "",
    max_retries: int = 3,
    backoff_step: float = 4.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await fn(), retrying transient failures up to max_retries more times with
    attempt * backoff_step seconds between tries. Fatal failures and the last
    transient one are re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            kind = classify_failure(e)
            if not kind.retryable or attempt >= max_retries:
                raise
            attempt += 1
            backoff = attempt * backoff_step
            logger.warning(
                "Retry %d/%d for %s after %.0fs (%s: %s)",
                attempt, max_retries, label or "chunk", backoff, kind.value, e,
            )
            await sleep(backoff)
