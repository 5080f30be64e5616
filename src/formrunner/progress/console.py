# src/formrunner/progress/console.py
"""Console reporter for progress events.

Consumes a Subscription on a background thread and writes each event to a
stream as JSON lines or human-readable text. Used by the CLI for
foreground runs.
"""

from __future__ import annotations

import json
import sys
import threading
from typing import TYPE_CHECKING, Literal, TextIO, TypeGuard

import structlog

from formrunner.contracts import LogEntry, LogLevel, ProgressEvent, ProgressEventType, StatusSnapshot

if TYPE_CHECKING:
    from formrunner.progress.publisher import ProgressPublisher, Subscription

logger = structlog.get_logger(__name__)

_LEVEL_MARKERS: dict[LogLevel, str] = {
    LogLevel.INFO: "INFO",
    LogLevel.SUCCESS: " OK ",
    LogLevel.ERROR: "FAIL",
}


def is_valid_format(v: str) -> TypeGuard[Literal["json", "pretty"]]:
    return v in {"json", "pretty"}


class ConsoleReporter:
    """Print progress events as they arrive.

    Status events are printed only when the state or the processed count
    changes, so the per-item "in-progress" snapshots don't double the output.

    Example:
        reporter = ConsoleReporter(publisher, output_format="pretty")
        reporter.start()
        ...
        reporter.stop()
    """

    def __init__(
        self,
        publisher: ProgressPublisher,
        *,
        output_format: Literal["json", "pretty"] = "pretty",
        stream: TextIO | None = None,
    ) -> None:
        if not is_valid_format(output_format):
            raise ValueError(f"Invalid format {output_format!r}. Must be one of: json, pretty")
        self._publisher = publisher
        self._format = output_format
        self._stream = stream if stream is not None else sys.stdout
        self._subscription: Subscription | None = None
        self._thread: threading.Thread | None = None
        self._last_status_key: tuple[str, int] | None = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("ConsoleReporter already started")
        # Live events only: the CLI starts reporting before the run begins
        self._subscription = self._publisher.subscribe(replay=False)
        self._thread = threading.Thread(target=self._consume, name="formrunner-console", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Print whatever is still queued, then detach."""
        if self._subscription is None or self._thread is None:
            return
        self._subscription.close()
        self._thread.join(timeout=timeout)
        self._thread = None
        self._subscription = None

    def _consume(self) -> None:
        assert self._subscription is not None
        for event in self._subscription:
            self.render(event)

    def render(self, event: ProgressEvent) -> None:
        """Write one event. Output errors are logged, never raised."""
        try:
            line = self._format_json(event) if self._format == "json" else self._format_pretty(event)
            if line is not None:
                print(line, file=self._stream, flush=True)
        except (OSError, ValueError) as e:
            logger.warning("console_render_failed", event_type=event.type.value, error=str(e))

    def _format_json(self, event: ProgressEvent) -> str:
        return json.dumps(event.to_dict())

    def _format_pretty(self, event: ProgressEvent) -> str | None:
        if event.type == ProgressEventType.LOG:
            assert isinstance(event.payload, LogEntry)
            entry = event.payload
            return f"[{entry.timestamp.strftime('%H:%M:%S')}] {_LEVEL_MARKERS[entry.level]} {entry.message}"

        assert isinstance(event.payload, StatusSnapshot)
        snapshot = event.payload
        key = (snapshot.state.value, snapshot.processed)
        if key == self._last_status_key:
            return None
        self._last_status_key = key
        return (
            f"  {snapshot.state.value:<11} {snapshot.processed}/{snapshot.total} "
            f"({snapshot.percent_complete:.1f}%) succeeded={snapshot.succeeded} failed={snapshot.failed}"
        )
