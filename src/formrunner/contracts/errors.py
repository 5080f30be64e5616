"""Exception hierarchy for formrunner.

Every error raised across a component boundary derives from
FormRunnerError so callers (CLI, HTTP surface) can map them uniformly.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from formrunner.contracts.events import StatusSnapshot


class FormRunnerError(Exception):
    """Base class for all formrunner errors."""


class InitializationError(FormRunnerError):
    """Raised when the external actor cannot establish a session.

    Fatal for the run: the session is closed with status ``error``.
    """


class ItemExecutionError(FormRunnerError):
    """Raised when one item cannot be processed.

    The retry controller raises this once attempts are exhausted or further
    attempts were cancelled by a stop request. The orchestrator records the
    item as failed and moves on.
    """

    def __init__(self, message: str, *, index: int | None = None, attempts: int = 1, cancelled: bool = False) -> None:
        self.index = index
        self.attempts = attempts
        self.cancelled = cancelled
        super().__init__(message)

    @property
    def note(self) -> str:
        """Human-readable failure note stored on the work item."""
        return str(self)


class PersistenceError(FormRunnerError):
    """Raised when a checkpoint read or write fails."""


class ControlConflictError(FormRunnerError):
    """Raised when a control command is invalid for the current state.

    No state change has been made when this is raised.
    """


class AlreadyRunningError(ControlConflictError):
    """Raised when starting a run while another session is active."""


class SessionNotFoundError(ControlConflictError):
    """Raised when a session id does not exist in the checkpoint store."""

    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class NothingToResumeError(ControlConflictError):
    """Raised when resuming a session that has no unfinished items."""


class RecordsFileError(FormRunnerError):
    """Raised when an input records file cannot be read or is empty."""


class CommandNotConfirmedError(FormRunnerError):
    """Raised when an accepted pause, stop or abort did not land in time.

    Unlike ControlConflictError the command has taken effect: the run will
    still pause or halt at the next item boundary. ``snapshot`` is the
    status at the moment the wait gave up.
    """

    def __init__(self, command: str, timeout: float, snapshot: "StatusSnapshot") -> None:
        self.command = command
        self.timeout = timeout
        self.snapshot = snapshot
        super().__init__(f"{command} not confirmed within {timeout:g}s; run is still {snapshot.state.value}")
