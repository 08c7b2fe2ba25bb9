"""Tests for the retry policy."""

import pytest

from operator_hub.core.retry import RetryPolicy


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("nope")
        return "ok"


class TestRetryPolicy:
    def test_delays_double(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_succeeds_after_failures(self):
        sleeps = []
        fn = Flaky(2)
        assert RetryPolicy(sleep=sleeps.append).call(fn, retry_on=(ConnectionError,)) == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up(self):
        fn = Flaky(5)
        with pytest.raises(ConnectionError):
            RetryPolicy(max_attempts=3, sleep=lambda s: None).call(fn, retry_on=(ConnectionError,))
        assert fn.calls == 3

    def test_other_errors_are_not_retried(self):
        fn = Flaky(1, error=ValueError)
        with pytest.raises(ValueError):
            RetryPolicy(sleep=lambda s: None).call(fn, retry_on=(ConnectionError,))
        assert fn.calls == 1

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
