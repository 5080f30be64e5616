"""Checkpoint and recovery contracts.

These types describe what is written to, and derived from, the checkpoint
store when a run progresses or is resumed.
"""

from dataclasses import dataclass

from formrunner.contracts.enums import SessionStatus
from formrunner.contracts.records import Session, WorkItem


@dataclass(frozen=True, slots=True)
class SessionProgress:
    """Counter snapshot written alongside each item checkpoint.

    ``processed`` always equals ``succeeded + failed``.
    """

    processed: int
    succeeded: int
    failed: int
    status: SessionStatus | None = None

    def __post_init__(self) -> None:
        if min(self.processed, self.succeeded, self.failed) < 0:
            raise ValueError(f"counters must be non-negative: {self}")
        if self.processed != self.succeeded + self.failed:
            raise ValueError(f"processed ({self.processed}) must equal succeeded ({self.succeeded}) + failed ({self.failed})")


@dataclass(frozen=True, slots=True)
class ResumeCheck:
    """Result of checking whether a session can be resumed."""

    can_resume: bool
    reason: str | None = None
    requires_force: bool = False

    def __post_init__(self) -> None:
        if self.can_resume and self.reason is not None:
            raise ValueError("can_resume=True should not have a reason")
        if not self.can_resume and self.reason is None:
            raise ValueError("can_resume=False must have a reason explaining why")


@dataclass(frozen=True, slots=True)
class ResumePoint:
    """Everything an orchestrator needs to continue a session.

    ``start_index`` is derived from item statuses, never stored. Items left
    ``in-progress`` by a crashed process have already been reset to
    ``pending`` in ``items``.
    """

    session: Session
    items: tuple[WorkItem, ...]
    start_index: int
    progress: SessionProgress
