# tests/core/checkpoint/test_recovery.py
"""Tests for resume eligibility and resume point derivation."""

import pytest

from formrunner.contracts import ItemStatus, SessionNotFoundError, SessionStatus, WorkItem
from formrunner.core.checkpoint import CheckpointStore, RecoveryManager, first_unfinished_index, progress_from_items
from tests.fixtures.actors import make_records


def _set_statuses(store: CheckpointStore, session_id: int, statuses: list[ItemStatus]) -> None:
    items = store.get_items(session_id)
    for item, status in zip(items, statuses, strict=True):
        item.status = status
    store.update_items(session_id, items)


class TestFirstUnfinishedIndex:
    def test_skips_done_items(self) -> None:
        items = [
            WorkItem(index=0, payload={}, status=ItemStatus.DONE),
            WorkItem(index=1, payload={}, status=ItemStatus.FAILED),
            WorkItem(index=2, payload={}, status=ItemStatus.PENDING),
        ]
        assert first_unfinished_index(items) == 1

    def test_all_done(self) -> None:
        items = [WorkItem(index=i, payload={}, status=ItemStatus.DONE) for i in range(3)]
        assert first_unfinished_index(items) is None

    def test_empty(self) -> None:
        assert first_unfinished_index([]) is None


class TestProgressFromItems:
    def test_counts_done_and_failed(self) -> None:
        items = [
            WorkItem(index=0, payload={}, status=ItemStatus.DONE),
            WorkItem(index=1, payload={}, status=ItemStatus.FAILED),
            WorkItem(index=2, payload={}, status=ItemStatus.DONE),
            WorkItem(index=3, payload={}, status=ItemStatus.PENDING),
        ]
        progress = progress_from_items(items)
        assert (progress.processed, progress.succeeded, progress.failed) == (3, 2, 1)


class TestCanResume:
    def test_paused_session(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(2))
        store.set_session_status(session_id, SessionStatus.PAUSED)
        assert RecoveryManager(store).can_resume(session_id).can_resume

    def test_running_session_left_by_crash(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(2))
        assert RecoveryManager(store).can_resume(session_id).can_resume

    def test_stopped_session(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(2))
        store.close_session(session_id, SessionStatus.STOPPED)
        assert RecoveryManager(store).can_resume(session_id).can_resume

    def test_missing_session(self, store: CheckpointStore) -> None:
        check = RecoveryManager(store).can_resume(404)
        assert not check.can_resume
        assert check.reason is not None
        assert "not found" in check.reason
        assert not check.requires_force

    @pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.ERROR])
    def test_terminal_session_needs_force(self, store: CheckpointStore, status: SessionStatus) -> None:
        session_id = store.create_session("x", make_records(2))
        _set_statuses(store, session_id, [ItemStatus.DONE, ItemStatus.FAILED])
        store.close_session(session_id, status)
        recovery = RecoveryManager(store)

        check = recovery.can_resume(session_id)
        assert not check.can_resume
        assert check.requires_force

        assert recovery.can_resume(session_id, force=True).can_resume

    def test_all_done_cannot_resume_even_with_force(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(2))
        _set_statuses(store, session_id, [ItemStatus.DONE, ItemStatus.DONE])
        store.close_session(session_id, SessionStatus.COMPLETED)

        check = RecoveryManager(store).can_resume(session_id, force=True)
        assert not check.can_resume
        assert not check.requires_force
        assert check.reason is not None
        assert "no unfinished items" in check.reason


class TestGetResumePoint:
    def test_start_index_is_first_item_not_done(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(5))
        _set_statuses(
            store,
            session_id,
            [ItemStatus.DONE, ItemStatus.DONE, ItemStatus.FAILED, ItemStatus.PENDING, ItemStatus.PENDING],
        )
        store.set_session_status(session_id, SessionStatus.PAUSED)

        point = RecoveryManager(store).get_resume_point(session_id)
        assert point.start_index == 2
        assert point.session.session_id == session_id
        assert (point.progress.processed, point.progress.succeeded, point.progress.failed) == (3, 2, 1)
        assert len(point.items) == 5

    def test_in_progress_items_are_reset(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(3))
        _set_statuses(store, session_id, [ItemStatus.DONE, ItemStatus.IN_PROGRESS, ItemStatus.PENDING])

        point = RecoveryManager(store).get_resume_point(session_id)
        assert point.start_index == 1
        assert point.items[1].status == ItemStatus.PENDING
        assert store.get_items(session_id)[1].status == ItemStatus.PENDING

    def test_missing_session_raises(self, store: CheckpointStore) -> None:
        with pytest.raises(SessionNotFoundError):
            RecoveryManager(store).get_resume_point(404)

    def test_nothing_left_raises(self, store: CheckpointStore) -> None:
        session_id = store.create_session("x", make_records(1))
        _set_statuses(store, session_id, [ItemStatus.DONE])
        with pytest.raises(ValueError, match="no unfinished items"):
            RecoveryManager(store).get_resume_point(session_id)
