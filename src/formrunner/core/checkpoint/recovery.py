# src/formrunner/core/checkpoint/recovery.py
"""Recovery logic for resuming sessions.

The resume offset is derived from item statuses on every load: the first
item that is not ``done``. Nothing else about the position is stored.
"""

from formrunner.contracts import (
    ItemStatus,
    ResumeCheck,
    ResumePoint,
    SessionNotFoundError,
    SessionProgress,
    SessionStatus,
    WorkItem,
)
from formrunner.core.checkpoint.store import CheckpointStore
from formrunner.core.logging import get_logger

logger = get_logger(__name__)

# Statuses that can be resumed only when the caller insists
_FORCE_ONLY_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.ERROR})


def first_unfinished_index(items: list[WorkItem] | tuple[WorkItem, ...]) -> int | None:
    """Index of the first item that still needs processing, or None."""
    for item in items:
        if item.status != ItemStatus.DONE:
            return item.index
    return None


def progress_from_items(items: list[WorkItem] | tuple[WorkItem, ...]) -> SessionProgress:
    """Recompute session counters from item statuses."""
    succeeded = sum(1 for item in items if item.status == ItemStatus.DONE)
    failed = sum(1 for item in items if item.status == ItemStatus.FAILED)
    return SessionProgress(processed=succeeded + failed, succeeded=succeeded, failed=failed)


class RecoveryManager:
    """Decides whether a session can be resumed and where.

    Example:
        recovery = RecoveryManager(store)
        check = recovery.can_resume(session_id)
        if check.can_resume:
            point = recovery.get_resume_point(session_id)
    """

    def __init__(self, store: CheckpointStore) -> None:
        self._store = store

    def can_resume(self, session_id: int, *, force: bool = False) -> ResumeCheck:
        """Check whether a session can be resumed.

        ``running`` sessions qualify because a process that crashed never
        got to close them; the caller must make sure the session is not
        active in this process.
        """
        session = self._store.get_session(session_id)
        if session is None:
            return ResumeCheck(can_resume=False, reason=f"Session {session_id} not found")

        if session.status in _FORCE_ONLY_STATUSES and not force:
            return ResumeCheck(
                can_resume=False,
                reason=f"Session {session_id} is {session.status.value}; use force to resume it",
                requires_force=True,
            )

        items = self._store.get_items(session_id)
        if not items:
            return ResumeCheck(can_resume=False, reason=f"Session {session_id} has no work items")
        if first_unfinished_index(items) is None:
            return ResumeCheck(can_resume=False, reason=f"Session {session_id} has no unfinished items")

        return ResumeCheck(can_resume=True)

    def get_resume_point(self, session_id: int) -> ResumePoint:
        """Load a session for resumption.

        Items left ``in-progress`` are reset to ``pending`` in the store
        before the items are read back.

        Raises:
            SessionNotFoundError: If the session does not exist.
            ValueError: If the session has nothing left to process.
        """
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        reset = self._store.reset_in_progress_items(session_id)
        if reset:
            logger.warning("reset_interrupted_items", session_id=session_id, count=reset)

        items = tuple(self._store.get_items(session_id))
        start_index = first_unfinished_index(items)
        if start_index is None:
            raise ValueError(f"Session {session_id} has no unfinished items")

        return ResumePoint(
            session=session,
            items=items,
            start_index=start_index,
            progress=progress_from_items(items),
        )
