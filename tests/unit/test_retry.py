import asyncio

import httpx
import pytest

from statement_analyzer.errors import MalformedResponseError, NotBankStatementError, ProviderError
from statement_analyzer.retry import FailureKind, call_with_retry, classify_failure


@pytest.mark.parametrize(
    "exc, kind",
    [
        (ProviderError(429, "Resource has been exhausted"), FailureKind.RATE_LIMITED),
        (ProviderError(503, "The model is overloaded"), FailureKind.OVERLOADED),
        (ProviderError(504, "Deadline exceeded"), FailureKind.TIMEOUT),
        (RuntimeError("DEADLINE_EXCEEDED while waiting"), FailureKind.TIMEOUT),
        (MalformedResponseError("Invalid JSON response from AI"), FailureKind.MALFORMED_RESPONSE),
        (httpx.ReadTimeout("read timed out"), FailureKind.TIMEOUT),
        (httpx.ConnectError("connection refused"), FailureKind.NETWORK_ERROR),
        (RuntimeError("read ECONNRESET"), FailureKind.NETWORK_ERROR),
        (RuntimeError("fetch failed"), FailureKind.NETWORK_ERROR),
        (ProviderError(401, "API key not valid"), FailureKind.FATAL),
        (ProviderError(400, "Invalid JSON payload received"), FailureKind.FATAL),
        (NotBankStatementError(), FailureKind.FATAL),
        (ValueError("something else"), FailureKind.FATAL),
    ],
)
def test_classify_failure(exc: Exception, kind: FailureKind) -> None:
    assert classify_failure(exc) is kind


class Flaky:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def test_retryable_failure_then_success_returns_second_result() -> None:
    fn = Flaky(ProviderError(503, "overloaded"), "ok")
    sleep = RecordingSleep()

    result = asyncio.run(call_with_retry(fn, label="pages 1-2", sleep=sleep))

    assert result == "ok"
    assert fn.calls == 2
    assert sleep.delays == [4.0]


def test_backoff_grows_linearly_and_last_error_is_raised() -> None:
    err = ProviderError(429, "rate limit")
    fn = Flaky(err, err, err, err)
    sleep = RecordingSleep()

    with pytest.raises(ProviderError) as info:
        asyncio.run(call_with_retry(fn, max_retries=3, backoff_step=4.0, sleep=sleep))

    assert info.value is err
    assert fn.calls == 4
    assert sleep.delays == [4.0, 8.0, 12.0]


def test_fatal_failure_is_not_retried() -> None:
    fn = Flaky(NotBankStatementError(), "never")
    sleep = RecordingSleep()

    with pytest.raises(NotBankStatementError):
        asyncio.run(call_with_retry(fn, sleep=sleep))

    assert fn.calls == 1
    assert sleep.delays == []


def test_zero_retries_means_single_attempt() -> None:
    fn = Flaky(MalformedResponseError("bad json"))

    with pytest.raises(MalformedResponseError):
        asyncio.run(call_with_retry(fn, max_retries=0, sleep=RecordingSleep()))

    assert fn.calls == 1
