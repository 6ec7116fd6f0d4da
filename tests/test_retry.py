import pytest

from rhinospider.fetch import RateLimitedError, TransportError, parse_retry_after
from rhinospider.retry import backoff_delay, retry_call


def test_backoff_delay_strategies():
    assert backoff_delay(1, 1.0) == 1.0
    assert backoff_delay(3, 1.0) == 3.0
    assert backoff_delay(1, 5.0, strategy="exponential") == 5.0
    assert backoff_delay(4, 5.0, strategy="exponential") == 40.0
    assert backoff_delay(10, 5.0, strategy="exponential", max_delay=120.0) == 120.0


def test_retry_call_retries_until_success():
    sleeps = []
    attempts = []

    def _func(attempt):
        attempts.append(attempt)
        if attempt < 3:
            raise TransportError("down")
        return "ok"

    assert retry_call(_func, max_attempts=3, base_delay=1.0, sleep=sleeps.append) == "ok"
    assert attempts == [1, 2, 3]
    assert sleeps == [1.0, 2.0]


def test_retry_call_reraises_last_error():
    sleeps = []

    def _func(attempt):
        raise TransportError(f"attempt {attempt}")

    with pytest.raises(TransportError, match="attempt 2"):
        retry_call(_func, max_attempts=2, base_delay=0.5, sleep=sleeps.append)
    assert sleeps == [0.5]


def test_retry_call_stops_on_non_retryable():
    sleeps = []
    calls = []

    def _func(attempt):
        calls.append(attempt)
        raise RateLimitedError("slow down", retry_after_seconds=10)

    with pytest.raises(RateLimitedError):
        retry_call(
            _func,
            max_attempts=3,
            base_delay=1.0,
            is_retryable=lambda exc: not isinstance(exc, RateLimitedError),
            sleep=sleeps.append,
        )
    assert calls == [1]
    assert sleeps == []


def test_retry_call_requires_an_attempt():
    with pytest.raises(ValueError):
        retry_call(lambda attempt: attempt, max_attempts=0, base_delay=1.0)


def test_parse_retry_after_seconds_only():
    assert parse_retry_after("10") == 10.0
    assert parse_retry_after(" 2.5 ") == 2.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("-1") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
