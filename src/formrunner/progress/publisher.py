# src/formrunner/progress/publisher.py
"""ProgressPublisher: fan-out of status snapshots and log lines.

Publishing never blocks the processing loop. Each subscriber owns a
bounded queue; when a subscriber falls behind its queue fills up and
further events for that subscriber are dropped and counted. A closed
subscriber is detached on the next publish.

Events are published only after the corresponding checkpoint write, so
anything an observer sees is already durable.
"""

import queue
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import structlog

from formrunner.contracts import IDLE_SNAPSHOT, LogEntry, LogLevel, ProgressEvent, StatusSnapshot
from formrunner.progress.buffer import LogBuffer

logger = structlog.get_logger(__name__)

# Wakes a blocked consumer when its subscription closes
_CLOSED = object()


class Subscription:
    """One observer's view of the event stream.

    Obtain instances from ProgressPublisher.subscribe(). Iterate to consume
    events until the subscription is closed, or poll with get().
    """

    # Log aggregate drop counts instead of every drop
    _LOG_INTERVAL = 100

    def __init__(self, publisher: "ProgressPublisher", maxsize: int) -> None:
        self._publisher = publisher
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dropped(self) -> int:
        """Events discarded because this subscriber's queue was full."""
        return self._dropped

    def _offer(self, event: ProgressEvent) -> bool:
        """Enqueue without blocking. Returns False if the event was dropped."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped += 1
            if self._dropped % self._LOG_INTERVAL == 1:
                logger.warning("progress_subscriber_lagging", dropped_total=self._dropped, queue_size=self._queue.maxsize)
            return False
        return True

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None on timeout or once the subscription is closed."""
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        event: ProgressEvent = item
        return event

    def drain(self) -> list[ProgressEvent]:
        """All events currently queued, without waiting."""
        events: list[ProgressEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not _CLOSED:
                events.append(item)

    def close(self) -> None:
        """Detach from the publisher and wake any blocked consumer. Idempotent."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._publisher.unsubscribe(self)
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                # Make room for the wake-up marker; the subscriber is going away
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


class ProgressPublisher:
    """Broadcast hub for status and log events.

    Thread Safety:
        All methods may be called from any thread. Dispatch happens under a
        lock, which also makes subscribe() atomic with respect to publishing:
        a new subscriber sees the replayed history followed by every later
        event, with nothing lost or duplicated in between.

    Example:
        publisher = ProgressPublisher(log_buffer_size=100)
        with publisher.subscribe() as sub:
            publisher.info("Starting")
            event = sub.get(timeout=1.0)
    """

    def __init__(self, *, log_buffer_size: int = 100, subscriber_queue_size: int = 1000) -> None:
        if subscriber_queue_size < 1:
            raise ValueError(f"subscriber_queue_size must be >= 1, got {subscriber_queue_size}")
        self._lock = threading.Lock()
        self._logs = LogBuffer(max_size=log_buffer_size)
        self._subscriber_queue_size = subscriber_queue_size
        self._subscribers: list[Subscription] = []
        self._latest_status: StatusSnapshot = IDLE_SNAPSHOT
        self._sequence = 0
        self._events_published = 0
        self._events_dropped = 0

    # === Publishing ===

    def publish_status(self, snapshot: StatusSnapshot) -> None:
        with self._lock:
            self._latest_status = snapshot
            self._dispatch(ProgressEvent.status(snapshot))

    def log(self, level: LogLevel, message: str) -> LogEntry:
        with self._lock:
            self._sequence += 1
            entry = LogEntry(sequence=self._sequence, level=level, message=message, timestamp=datetime.now(UTC))
            self._logs.append(entry)
            self._dispatch(ProgressEvent.log(entry))
        return entry

    def info(self, message: str) -> LogEntry:
        return self.log(LogLevel.INFO, message)

    def success(self, message: str) -> LogEntry:
        return self.log(LogLevel.SUCCESS, message)

    def error(self, message: str) -> LogEntry:
        return self.log(LogLevel.ERROR, message)

    def clear_logs(self) -> None:
        """Drop the replay window, e.g. when a new run starts."""
        with self._lock:
            self._logs.clear()

    def _dispatch(self, event: ProgressEvent) -> None:
        # Caller holds self._lock
        self._events_published += 1
        detached: list[Subscription] = []
        for subscription in self._subscribers:
            if subscription.closed:
                detached.append(subscription)
            elif not subscription._offer(event):
                self._events_dropped += 1
        for subscription in detached:
            self._subscribers.remove(subscription)

    # === Subscribing ===

    def subscribe(self, *, replay: bool = True) -> Subscription:
        """Attach a new subscriber.

        Args:
            replay: Queue the latest status snapshot and the buffered log
                window before any live event.
        """
        with self._lock:
            subscription = Subscription(self, self._subscriber_queue_size)
            if replay:
                subscription._offer(ProgressEvent.status(self._latest_status))
                for entry in self._logs.snapshot():
                    subscription._offer(ProgressEvent.log(entry))
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def close(self) -> None:
        """Close every subscription."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()

    # === Queries ===

    @property
    def latest_status(self) -> StatusSnapshot:
        with self._lock:
            return self._latest_status

    def recent_logs(self) -> tuple[LogEntry, ...]:
        with self._lock:
            return self._logs.snapshot()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def health_metrics(self) -> dict[str, Any]:
        """Publisher counters for monitoring."""
        with self._lock:
            return {
                "events_published": self._events_published,
                "events_dropped": self._events_dropped,
                "subscribers": len(self._subscribers),
                "log_buffer_size": len(self._logs),
                "log_buffer_max": self._logs.max_size,
                "logs_evicted": self._logs.evicted_count,
            }
