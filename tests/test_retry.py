"""Tests for error classification and backoff."""

from __future__ import annotations

import pytest

from gba.errors import ErrorKind, ExecError
from gba.retry import RetryPolicy, classify_error_message


class TestClassify:
    @pytest.mark.parametrize("message,kind", [
        ("Connection reset by peer", ErrorKind.NETWORK),
        ("HTTP 503 Service Unavailable", ErrorKind.NETWORK),
        ("429 Too Many Requests", ErrorKind.RATE_LIMITED),
        ("API is overloaded", ErrorKind.RATE_LIMITED),
        ("request timed out", ErrorKind.TIMEOUT),
        ("Invalid API key provided", ErrorKind.AUTH),
        ("401 Unauthorized", ErrorKind.AUTH),
        ("400 malformed body", ErrorKind.INVALID_REQUEST),
        ("something odd", ErrorKind.OTHER),
        ("", ErrorKind.OTHER),
        (None, ErrorKind.OTHER),
    ])
    def test_classification(self, message, kind):
        assert classify_error_message(message) == kind


class TestRetryPolicy:
    def test_default_delays_double(self):
        policy = RetryPolicy()
        assert [policy.next_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=10, multiplier=10, max_delay=60)
        assert policy.next_delay(1) == 10
        assert policy.next_delay(2) == 60
        assert policy.next_delay(5) == 60

    def test_jitter_stays_within_half_to_full_delay(self):
        policy = RetryPolicy(jitter=True)
        for _ in range(50):
            assert 2.0 <= policy.next_delay(3) <= 4.0

    @pytest.mark.parametrize("kind,retryable", [
        (ErrorKind.NETWORK, True),
        (ErrorKind.RATE_LIMITED, True),
        (ErrorKind.TIMEOUT, True),
        (ErrorKind.AUTH, False),
        (ErrorKind.INVALID_REQUEST, False),
        (ErrorKind.CANCELLED, False),
        (ErrorKind.SHUTDOWN, False),
        (ErrorKind.OTHER, False),
    ])
    def test_retryable_kinds(self, kind, retryable):
        assert RetryPolicy().is_retryable(ExecError(kind, "x")) is retryable

    def test_should_retry_respects_attempt_bound(self):
        policy = RetryPolicy(max_attempts=3)
        error = ExecError(ErrorKind.NETWORK, "reset")
        assert policy.should_retry(error, 1)
        assert policy.should_retry(error, 2)
        assert not policy.should_retry(error, 3)

    def test_single_attempt_never_retries(self):
        policy = RetryPolicy(max_attempts=1)
        assert not policy.should_retry(ExecError(ErrorKind.TIMEOUT, "slow"), 1)

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.parametrize("multiplier", [1, 0.5])
    def test_non_growing_multiplier_rejected(self, multiplier):
        with pytest.raises(ValueError):
            RetryPolicy(multiplier=multiplier)

    def test_delays_grow_until_cap_then_stay(self):
        policy = RetryPolicy(base_delay=1, multiplier=1.5, max_delay=5)
        delays = [policy.next_delay(n) for n in range(1, 8)]
        grown = [d for d in delays if d < 5]
        assert all(a < b for a, b in zip(grown, grown[1:]))
        assert delays[len(grown):] == [5] * (len(delays) - len(grown))
