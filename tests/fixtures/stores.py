# tests/fixtures/stores.py
"""CheckpointStore and ProgressPublisher doubles that observe ordering."""

from collections.abc import Iterable

from formrunner.contracts import PersistenceError, SessionProgress, StatusSnapshot, WorkItem
from formrunner.core.checkpoint import CheckpointDB, CheckpointStore
from formrunner.progress import ProgressPublisher


class RecordingStore(CheckpointStore):
    """Keeps every SessionProgress handed to save_checkpoint, in order."""

    def __init__(self, db: CheckpointDB) -> None:
        super().__init__(db)
        self.saved_progress: list[SessionProgress] = []

    def save_checkpoint(self, session_id: int, items: Iterable[WorkItem], progress: SessionProgress) -> None:
        super().save_checkpoint(session_id, items, progress)
        self.saved_progress.append(progress)


class FailingStore(CheckpointStore):
    """Raises PersistenceError from the next ``failures`` save_checkpoint calls.

    ``failures=None`` fails every call.
    """

    def __init__(self, db: CheckpointDB, failures: int | None = None) -> None:
        super().__init__(db)
        self.remaining_failures = failures
        self.attempts = 0

    def save_checkpoint(self, session_id: int, items: Iterable[WorkItem], progress: SessionProgress) -> None:
        self.attempts += 1
        if self.remaining_failures is None:
            raise PersistenceError("disk I/O error")
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise PersistenceError("disk I/O error")
        super().save_checkpoint(session_id, items, progress)


class StoreCheckingPublisher(ProgressPublisher):
    """Compares every published status with what the store already holds."""

    def __init__(self, store: CheckpointStore) -> None:
        super().__init__()
        self._store = store
        self.observations: list[tuple[StatusSnapshot, int]] = []

    def publish_status(self, snapshot: StatusSnapshot) -> None:
        if snapshot.session_id is not None:
            session = self._store.get_session(snapshot.session_id)
            assert session is not None
            self.observations.append((snapshot, session.processed))
        super().publish_status(snapshot)
