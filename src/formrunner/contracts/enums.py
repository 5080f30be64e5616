"""Status codes and states used across subsystem boundaries.

Values of SessionStatus and ItemStatus are stored in the checkpoint
database; changing a value is a schema change.
"""

from enum import StrEnum


class SessionStatus(StrEnum):
    """Status of a batch session.

    Stored in the database (sessions.status).
    """

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_SESSION_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.PAUSED)


_TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.ERROR})


class ItemStatus(StrEnum):
    """Processing status of one work item.

    Stored in the database (work_items.status).
    """

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"


class OrchestratorState(StrEnum):
    """In-memory lifecycle state of an Orchestrator.

    Not persisted. The persisted counterpart is SessionStatus.
    """

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self in (OrchestratorState.COMPLETED, OrchestratorState.STOPPED, OrchestratorState.ERROR)


class LogLevel(StrEnum):
    """Severity of an operator-facing progress log line."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class ProgressEventType(StrEnum):
    """Kind of event relayed by the progress publisher."""

    STATUS = "status"
    LOG = "log"
