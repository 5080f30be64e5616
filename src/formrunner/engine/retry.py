# src/formrunner/engine/retry.py
"""RetryController: bounded retries around a single work item.

Uses tenacity with a fixed backoff. The backoff wait is interruptible: when
the cancel event is set (stop or abort requested) the wait ends at once and
no further attempt starts. An attempt already in flight always runs to
completion.

Initialization is never retried here; only per-item processing is.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from formrunner.contracts import ItemExecutionError
from formrunner.progress.publisher import ProgressPublisher

if TYPE_CHECKING:
    from formrunner.core.config import RetrySettings


class _AttemptCancelled(Exception):
    """Raised inside the retry loop when a stop arrives during backoff."""


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for per-item retries.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=2 means: try, retry (2 total).
    """

    max_attempts: int = 2
    backoff_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for a single attempt."""
        return cls(max_attempts=1, backoff_seconds=0.0)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(max_attempts=settings.max_attempts, backoff_seconds=settings.backoff_seconds)


def _describe(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__


class RetryController:
    """Runs one item's operation with bounded retries.

    Each attempt produces exactly one log line on the publisher: a success
    line carrying the outcome note, or an error line carrying the failure.

    Example:
        controller = RetryController(RetryConfig(max_attempts=2), publisher, cancel_event)
        note = controller.execute(lambda: actor.process_item(payload), index=3, label="Record 4/10")
    """

    def __init__(
        self,
        config: RetryConfig,
        publisher: ProgressPublisher,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._config = config
        self._publisher = publisher
        self._cancel = cancel_event if cancel_event is not None else threading.Event()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _sleep(self, seconds: float) -> None:
        # Returns early when cancel is set
        self._cancel.wait(seconds)

    def execute(self, operation: Callable[[], str], *, index: int, label: str) -> str:
        """Run operation until it succeeds or attempts run out.

        Args:
            operation: Processes the item and returns an outcome note.
            index: Work item index, carried on the raised error.
            label: Human-readable item label for log lines.

        Returns:
            The outcome note of the first successful attempt.

        Raises:
            ItemExecutionError: Attempts exhausted, or a stop request
                cancelled the remaining attempts. The message is the last
                attempt's failure message.
        """
        max_attempts = self._config.max_attempts
        attempts_made = 0
        last_error: Exception | None = None

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(max_attempts) | stop_when_event_set(self._cancel),
                wait=wait_fixed(self._config.backoff_seconds),
                sleep=self._sleep,
                retry=retry_if_exception_type(Exception),
                reraise=False,  # RetryError is converted to ItemExecutionError below
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    if attempt > 1 and self._cancel.is_set():
                        raise _AttemptCancelled()
                    attempts_made = attempt
                    try:
                        note = operation()
                    except Exception as e:
                        last_error = e
                        self._publisher.error(f"{label}: attempt {attempt}/{max_attempts} failed: {_describe(e)}")
                        raise
                    self._publisher.success(f"{label}: {note}" if note else f"{label}: done")
                    return note

        except RetryError as e:
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            cancelled = attempts_made < max_attempts
            raise ItemExecutionError(
                _describe(final_error),
                index=index,
                attempts=attempts_made,
                cancelled=cancelled,
            ) from final_error

        # Retrying always returns or raises
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
