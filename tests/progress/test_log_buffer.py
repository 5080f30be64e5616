# tests/progress/test_log_buffer.py
"""Tests for the recent-log ring buffer."""

from datetime import UTC, datetime

import pytest

from formrunner.contracts import LogEntry, LogLevel
from formrunner.progress import LogBuffer


def _entry(sequence: int) -> LogEntry:
    return LogEntry(sequence=sequence, level=LogLevel.INFO, message=f"line {sequence}", timestamp=datetime.now(UTC))


class TestLogBuffer:
    def test_keeps_entries_in_order(self) -> None:
        buffer = LogBuffer(max_size=5)
        for n in range(3):
            buffer.append(_entry(n))
        assert [entry.sequence for entry in buffer.snapshot()] == [0, 1, 2]
        assert len(buffer) == 3

    def test_evicts_oldest_when_full(self) -> None:
        buffer = LogBuffer(max_size=100)
        for n in range(150):
            buffer.append(_entry(n))

        snapshot = buffer.snapshot()
        assert len(snapshot) == 100
        assert snapshot[0].sequence == 50
        assert snapshot[-1].sequence == 149
        assert buffer.evicted_count == 50

    def test_clear(self) -> None:
        buffer = LogBuffer(max_size=3)
        buffer.append(_entry(1))
        buffer.clear()
        assert buffer.snapshot() == ()

    def test_rejects_zero_size(self) -> None:
        with pytest.raises(ValueError):
            LogBuffer(max_size=0)
