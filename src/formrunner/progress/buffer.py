# src/formrunner/progress/buffer.py
"""Ring buffer of recent log entries.

New subscribers receive this window so an observer that connects mid-run
sees recent history. Oldest entries are evicted once the buffer is full.
"""

from collections import deque

from formrunner.contracts import LogEntry


class LogBuffer:
    """Ring buffer that drops the oldest entries on overflow.

    Thread Safety:
        NOT thread-safe. ProgressPublisher serializes access under its lock.

    Example:
        buffer = LogBuffer(max_size=100)
        buffer.append(entry)
        recent = buffer.snapshot()
    """

    def __init__(self, max_size: int = 100) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._buffer: deque[LogEntry] = deque(maxlen=max_size)
        self._evicted_count = 0

    def append(self, entry: LogEntry) -> None:
        # Check before append: deque evicts during append
        was_full = len(self._buffer) == self._buffer.maxlen
        self._buffer.append(entry)
        if was_full:
            self._evicted_count += 1

    def snapshot(self) -> tuple[LogEntry, ...]:
        """Buffered entries, oldest first."""
        return tuple(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    @property
    def max_size(self) -> int:
        maxlen = self._buffer.maxlen
        assert maxlen is not None
        return maxlen

    @property
    def evicted_count(self) -> int:
        """Entries pushed out of the window since creation."""
        return self._evicted_count

    def __len__(self) -> int:
        return len(self._buffer)
