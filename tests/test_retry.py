"""Tests for flakeinfo.retry."""

from __future__ import annotations

import pytest

from flakeinfo.errors import BackendError, ConfigError, RetryExhausted, TransportError
from flakeinfo.retry import RetryPolicy, call_with_retry


def test_delay_grows_exponentially_up_to_cap() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=5.0)

    assert [policy.delay_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_succeeds_after_transient_failures() -> None:
    attempts = []
    delays = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise TransportError("connection reset")
        return "ok"

    result = call_with_retry(
        flaky, policy=RetryPolicy(max_attempts=3), description="flaky call", sleep=delays.append
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert delays == [1.0, 2.0]


def test_exhaustion_chains_last_error() -> None:
    def always_down() -> None:
        raise TransportError("down")

    with pytest.raises(RetryExhausted) as excinfo:
        call_with_retry(
            always_down, policy=RetryPolicy(max_attempts=2), description="ping", sleep=lambda _: None
        )

    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.__cause__, TransportError)


def test_non_retryable_errors_propagate_immediately() -> None:
    calls = []

    def misconfigured() -> None:
        calls.append(1)
        raise ConfigError("bad")

    with pytest.raises(ConfigError):
        call_with_retry(misconfigured, policy=RetryPolicy(), description="x", sleep=lambda _: None)

    assert len(calls) == 1


def test_should_stop_cuts_retries_short() -> None:
    def down() -> None:
        raise TransportError("down")

    with pytest.raises(RetryExhausted) as excinfo:
        call_with_retry(
            down,
            policy=RetryPolicy(max_attempts=5),
            description="x",
            sleep=lambda _: None,
            should_stop=lambda: True,
        )

    assert excinfo.value.attempts == 1


def test_should_retry_rejects_deterministic_errors() -> None:
    calls = []

    def rejected() -> None:
        calls.append(1)
        raise BackendError("mapper_parsing_exception", status=400)

    with pytest.raises(RetryExhausted) as excinfo:
        call_with_retry(
            rejected,
            policy=RetryPolicy(max_attempts=3),
            description="bulk",
            sleep=lambda _: None,
            should_retry=lambda exc: exc.retryable,
        )

    assert len(calls) == 1
    assert excinfo.value.attempts == 1


def test_backend_error_retryability_by_status() -> None:
    assert BackendError("down", status=503).retryable
    assert BackendError("reset").retryable
    assert BackendError("slow", status=408).retryable
    assert BackendError("throttled", status=429).retryable
    assert not BackendError("bad request", status=400).retryable
    assert not BackendError("forbidden", status=403).retryable
