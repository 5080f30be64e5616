"""Shared contracts for cross-boundary data types.

This package is a leaf module with no outbound dependencies to core or
engine. Settings classes live in formrunner.core.config.
"""

from formrunner.contracts.actor import Credentials, ExternalActor
from formrunner.contracts.checkpoint import ResumeCheck, ResumePoint, SessionProgress
from formrunner.contracts.enums import (
    ItemStatus,
    LogLevel,
    OrchestratorState,
    ProgressEventType,
    SessionStatus,
)
from formrunner.contracts.errors import (
    AlreadyRunningError,
    CommandNotConfirmedError,
    ControlConflictError,
    FormRunnerError,
    InitializationError,
    ItemExecutionError,
    NothingToResumeError,
    PersistenceError,
    RecordsFileError,
    SessionNotFoundError,
)
from formrunner.contracts.events import IDLE_SNAPSHOT, LogEntry, ProgressEvent, StatusSnapshot
from formrunner.contracts.records import Session, SessionDetail, WorkItem

__all__ = [
    "IDLE_SNAPSHOT",
    "AlreadyRunningError",
    "CommandNotConfirmedError",
    "ControlConflictError",
    "Credentials",
    "ExternalActor",
    "FormRunnerError",
    "InitializationError",
    "ItemExecutionError",
    "ItemStatus",
    "LogEntry",
    "LogLevel",
    "NothingToResumeError",
    "OrchestratorState",
    "PersistenceError",
    "RecordsFileError",
    "ProgressEvent",
    "ProgressEventType",
    "ResumeCheck",
    "ResumePoint",
    "Session",
    "SessionDetail",
    "SessionNotFoundError",
    "SessionProgress",
    "SessionStatus",
    "StatusSnapshot",
    "WorkItem",
]
