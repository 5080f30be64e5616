# tests/engine/test_retry_controller.py
"""Tests for RetryController attempt accounting and cancellation."""

import threading
import time

import pytest

from formrunner.contracts import ItemExecutionError, LogLevel
from formrunner.engine.retry import RetryConfig, RetryController
from formrunner.progress import ProgressPublisher


class _Flaky:
    """Fails a fixed number of times, then returns a note."""

    def __init__(self, failures: int, note: str = "submitted") -> None:
        self.failures = failures
        self.note = note
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return self.note


class TestRetryConfig:
    def test_defaults(self) -> None:
        config = RetryConfig()
        assert config.max_attempts == 2
        assert config.backoff_seconds == 2.0

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_rejects_negative_backoff(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(backoff_seconds=-1)

    def test_no_retry(self) -> None:
        assert RetryConfig.no_retry().max_attempts == 1


class TestExecute:
    def test_first_attempt_success(self, publisher: ProgressPublisher, fast_retry: RetryConfig) -> None:
        operation = _Flaky(failures=0)
        note = RetryController(fast_retry, publisher).execute(operation, index=0, label="Record 1/1")

        assert note == "submitted"
        assert operation.calls == 1
        logs = publisher.recent_logs()
        assert len(logs) == 1
        assert logs[0].level == LogLevel.SUCCESS
        assert logs[0].message == "Record 1/1: submitted"

    def test_success_on_retry_logs_each_attempt(self, publisher: ProgressPublisher, fast_retry: RetryConfig) -> None:
        operation = _Flaky(failures=1)
        note = RetryController(fast_retry, publisher).execute(operation, index=0, label="Record 1/1")

        assert note == "submitted"
        assert operation.calls == 2
        logs = publisher.recent_logs()
        assert [entry.level for entry in logs] == [LogLevel.ERROR, LogLevel.SUCCESS]
        assert logs[0].message == "Record 1/1: attempt 1/2 failed: failure 1"

    def test_exhausted_attempts_raise_last_error(self, publisher: ProgressPublisher, fast_retry: RetryConfig) -> None:
        operation = _Flaky(failures=5)
        with pytest.raises(ItemExecutionError) as exc_info:
            RetryController(fast_retry, publisher).execute(operation, index=3, label="Record 4/4")

        error = exc_info.value
        assert str(error) == "failure 2"
        assert error.note == "failure 2"
        assert error.index == 3
        assert error.attempts == 2
        assert not error.cancelled
        assert operation.calls == 2
        assert [entry.level for entry in publisher.recent_logs()] == [LogLevel.ERROR, LogLevel.ERROR]

    def test_single_attempt_config(self, publisher: ProgressPublisher) -> None:
        operation = _Flaky(failures=1)
        with pytest.raises(ItemExecutionError):
            RetryController(RetryConfig.no_retry(), publisher).execute(operation, index=0, label="r")
        assert operation.calls == 1

    def test_error_without_message_uses_type_name(self, publisher: ProgressPublisher) -> None:
        def operation() -> str:
            raise TimeoutError()

        with pytest.raises(ItemExecutionError, match="TimeoutError"):
            RetryController(RetryConfig.no_retry(), publisher).execute(operation, index=0, label="r")

    def test_empty_note_logged_as_done(self, publisher: ProgressPublisher, fast_retry: RetryConfig) -> None:
        RetryController(fast_retry, publisher).execute(lambda: "", index=0, label="Record 1/1")
        assert publisher.recent_logs()[-1].message == "Record 1/1: done"


class TestCancellation:
    def test_cancel_before_retry_skips_remaining_attempts(self, publisher: ProgressPublisher) -> None:
        cancel = threading.Event()
        calls = 0

        def operation() -> str:
            nonlocal calls
            calls += 1
            cancel.set()
            raise RuntimeError("portal down")

        controller = RetryController(RetryConfig(max_attempts=3, backoff_seconds=0.0), publisher, cancel)
        with pytest.raises(ItemExecutionError) as exc_info:
            controller.execute(operation, index=0, label="r")

        assert calls == 1
        assert exc_info.value.cancelled
        assert exc_info.value.attempts == 1
        assert str(exc_info.value) == "portal down"

    def test_cancel_interrupts_backoff(self, publisher: ProgressPublisher) -> None:
        cancel = threading.Event()
        operation = _Flaky(failures=5)
        controller = RetryController(RetryConfig(max_attempts=2, backoff_seconds=30.0), publisher, cancel)

        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(ItemExecutionError) as exc_info:
                controller.execute(operation, index=0, label="r")
        finally:
            timer.cancel()

        assert time.monotonic() - started < 10
        assert operation.calls == 1
        assert exc_info.value.cancelled

    def test_in_flight_attempt_completes(self, publisher: ProgressPublisher) -> None:
        """A stop during an attempt does not discard that attempt's success."""
        cancel = threading.Event()

        def operation() -> str:
            cancel.set()
            return "finished anyway"

        controller = RetryController(RetryConfig(max_attempts=2, backoff_seconds=0.0), publisher, cancel)
        assert controller.execute(operation, index=0, label="r") == "finished anyway"
