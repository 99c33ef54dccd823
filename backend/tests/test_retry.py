"""Tests for the storage retry helper."""

import pytest

from billing_engine.core.errors import (
    ConcurrentModificationError,
    StorageError,
    ValidationError,
)
from billing_engine.core.retry import backoff_delay, retry_storage


class TestBackoff:
    def test_exponential_and_capped(self):
        assert [backoff_delay(n, 0.2, 1.0) for n in range(1, 6)] == [0.2, 0.4, 0.8, 1.0, 1.0]


class TestRetryStorage:
    def test_returns_first_success(self):
        sleeps = []
        assert retry_storage(lambda: "ok", sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_retries_storage_errors(self):
        sleeps = []
        outcomes = [StorageError("down"), ConcurrentModificationError("conflict"), "ok"]

        def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = retry_storage(
            operation, attempts=3, base_backoff=0.1, max_backoff=1.0, sleep=sleeps.append
        )

        assert result == "ok"
        assert len(sleeps) == 2
        # jitter adds at most 30% to each delay
        assert 0.1 <= sleeps[0] <= 0.13
        assert 0.2 <= sleeps[1] <= 0.26

    def test_gives_up_after_attempts(self):
        calls = []

        def operation():
            calls.append(1)
            raise StorageError("down")

        with pytest.raises(StorageError):
            retry_storage(operation, attempts=4, sleep=lambda _: None)
        assert len(calls) == 4

    def test_other_errors_not_retried(self):
        calls = []

        def operation():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            retry_storage(operation, sleep=lambda _: None)
        assert calls == [1]
