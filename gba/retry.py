"""Retry policy: failure classification and exponential backoff."""

from __future__ import annotations

import random

from .errors import ErrorKind, ExecError

RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT})

# Checked in order; the first matching group wins.
_MESSAGE_PATTERNS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.AUTH, (
        "unauthorized",
        "forbidden",
        "invalid api key",
        "authentication",
        "permission denied",
        "eacces",
    )),
    (ErrorKind.RATE_LIMITED, (
        "rate limit",
        "rate_limit",
        "too many requests",
        "429",
        "overloaded",
        "try again later",
    )),
    (ErrorKind.TIMEOUT, (
        "timed out",
        "timeout",
        "deadline exceeded",
    )),
    (ErrorKind.NETWORK, (
        "connection reset",
        "connection refused",
        "connection error",
        "network",
        "temporarily unavailable",
        "could not resolve host",
        "dns",
        "502",
        "503",
        "504",
    )),
    (ErrorKind.INVALID_REQUEST, (
        "invalid request",
        "invalid_request",
        "malformed",
        "400",
    )),
)


def classify_error_message(message: str | None) -> ErrorKind:
    """Map a free-text error from the agent or SDK onto an ErrorKind."""
    if not message:
        return ErrorKind.OTHER
    lowered = message.lower()
    for kind, patterns in _MESSAGE_PATTERNS:
        if any(p in lowered for p in patterns):
            return kind
    return ErrorKind.OTHER


class RetryPolicy:
    """Exponential backoff over retryable ExecErrors.

    Attempt numbers are 1-based: `next_delay(1)` is the wait after the
    first failed attempt. Delays grow strictly until they reach
    `max_delay`; from there on every retry waits `max_delay`.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_attempts: int = 3,
        max_delay: float = 60.0,
        jitter: bool = False,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if multiplier <= 1:
            raise ValueError("multiplier must be greater than 1")
        self.base_delay = base_delay
        self.multiplier = multiplier
        self._max_attempts = max_attempts
        self.max_delay = max_delay
        self.jitter = jitter

    def max_attempts(self) -> int:
        return self._max_attempts

    def is_retryable(self, error: ExecError) -> bool:
        return error.kind in RETRYABLE_KINDS

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay

    def should_retry(self, error: ExecError, attempt: int) -> bool:
        return self.is_retryable(error) and attempt < self._max_attempts
