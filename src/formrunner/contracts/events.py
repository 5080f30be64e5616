"""Progress events relayed to observers.

All events are frozen values: publishers hand out snapshots, never live
references to orchestrator state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from formrunner.contracts.enums import LogLevel, OrchestratorState, ProgressEventType


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """Point-in-time view of a run for status queries and status events."""

    state: OrchestratorState
    session_id: int | None = None
    label: str | None = None
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_index: int | None = None
    error_message: str | None = None

    @property
    def is_running(self) -> bool:
        return self.state in (OrchestratorState.INITIALIZING, OrchestratorState.RUNNING, OrchestratorState.PAUSING)

    @property
    def is_paused(self) -> bool:
        return self.state == OrchestratorState.PAUSED

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.processed / self.total * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "session_id": self.session_id,
            "label": self.label,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "current_index": self.current_index,
            "percent_complete": self.percent_complete,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "error_message": self.error_message,
        }


IDLE_SNAPSHOT = StatusSnapshot(state=OrchestratorState.IDLE)


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One operator-facing log line. Never persisted."""

    sequence: int
    level: LogLevel
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Envelope delivered to subscribers: either a status snapshot or a log line."""

    type: ProgressEventType
    payload: StatusSnapshot | LogEntry

    @classmethod
    def status(cls, snapshot: StatusSnapshot) -> "ProgressEvent":
        return cls(type=ProgressEventType.STATUS, payload=snapshot)

    @classmethod
    def log(cls, entry: LogEntry) -> "ProgressEvent":
        return cls(type=ProgressEventType.LOG, payload=entry)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.payload.to_dict()}
