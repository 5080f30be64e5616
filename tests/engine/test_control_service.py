# tests/engine/test_control_service.py
"""Tests for ControlService: run lifecycle on a worker thread."""

import threading
from collections.abc import Callable

import pytest

from formrunner.contracts import (
    IDLE_SNAPSHOT,
    AlreadyRunningError,
    CommandNotConfirmedError,
    ControlConflictError,
    Credentials,
    InitializationError,
    ItemStatus,
    NothingToResumeError,
    OrchestratorState,
    SessionNotFoundError,
    SessionStatus,
)
from formrunner.core.checkpoint import CheckpointStore
from formrunner.core.config import ControlSettings, FormRunnerSettings
from formrunner.engine.control import ControlService
from formrunner.engine.retry import RetryConfig
from formrunner.progress import ProgressPublisher
from tests.fixtures.actors import ItemGate, ScriptedActor, make_records

MakeControl = Callable[..., ControlService]


@pytest.fixture
def make_control(
    file_store: CheckpointStore, publisher: ProgressPublisher, credentials: Credentials, fast_retry: RetryConfig
) -> MakeControl:
    def _make(*actors: ScriptedActor, timeout: float = 5.0) -> ControlService:
        pending = list(actors)

        def factory() -> ScriptedActor:
            return pending.pop(0) if pending else ScriptedActor()

        return ControlService(
            file_store,
            publisher,
            factory,
            credentials=credentials,
            retry_config=fast_retry,
            control=ControlSettings(pause_timeout_seconds=timeout, stop_timeout_seconds=timeout),
        )

    return _make


class TestStart:
    def test_start_runs_to_completion(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        actor = ScriptedActor()
        control = make_control(actor)

        session = control.start(make_records(3), label="input.csv")
        assert session.label == "input.csv"
        assert session.total == 3
        assert control.wait(timeout=5)

        stored = file_store.get_session(session.session_id)
        assert stored is not None
        assert stored.status == SessionStatus.COMPLETED
        assert stored.succeeded == 3
        assert control.status().state == OrchestratorState.COMPLETED
        assert not control.is_active
        assert actor.released

    def test_start_with_no_records_rejected(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        control = make_control()
        with pytest.raises(ControlConflictError):
            control.start([], label="empty")
        assert file_store.list_sessions() == []

    def test_start_while_running_rejected(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R0")
        control = make_control(ScriptedActor(on_process=gate))
        session = control.start(make_records(2), label="first")
        try:
            assert gate.entered.wait(5)
            before = file_store.get_session(session.session_id)

            with pytest.raises(AlreadyRunningError):
                control.start(make_records(5), label="second")

            after = file_store.get_session(session.session_id)
            assert before is not None
            assert after is not None
            assert (after.processed, after.succeeded, after.failed) == (before.processed, before.succeeded, before.failed)
            assert len(file_store.list_sessions()) == 1
        finally:
            gate.release()
            control.wait(timeout=5)

    def test_new_run_allowed_after_previous_finished(self, make_control: MakeControl) -> None:
        control = make_control()
        control.start(make_records(1), label="first")
        assert control.wait(timeout=5)
        second = control.start(make_records(1), label="second")
        assert control.wait(timeout=5)
        assert control.status().session_id == second.session_id

    def test_actor_factory_failure_is_initialization_error(
        self, file_store: CheckpointStore, publisher: ProgressPublisher, credentials: Credentials
    ) -> None:
        def factory() -> ScriptedActor:
            raise RuntimeError("driver not installed")

        control = ControlService(file_store, publisher, factory, credentials=credentials)
        with pytest.raises(InitializationError, match="driver not installed"):
            control.start(make_records(1))
        assert file_store.list_sessions() == []


class TestPauseResumeStop:
    def test_pause_and_resume(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R0")
        actor = ScriptedActor(on_process=gate)
        control = make_control(actor)
        session = control.start(make_records(3), label="input.csv")
        try:
            assert gate.entered.wait(5)
            # pause() blocks until the boundary, so R0 is let go from a timer
            threading.Timer(0.2, gate.release).start()
            snapshot = control.pause()

            assert snapshot.state == OrchestratorState.PAUSED
            stored = file_store.get_session(session.session_id)
            assert stored is not None
            assert stored.status == SessionStatus.PAUSED
            assert actor.calls == ["R0"]

            control.resume()
            assert control.wait(timeout=5)
        finally:
            gate.release()
        assert actor.calls == ["R0", "R1", "R2"]

    def test_stop_returns_after_actor_released(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R1")
        actor = ScriptedActor(on_process=gate)
        control = make_control(actor)
        session = control.start(make_records(3), label="input.csv")
        assert gate.entered.wait(5)
        threading.Timer(0.2, gate.release).start()

        snapshot = control.stop()

        assert snapshot.state == OrchestratorState.STOPPED
        assert actor.released
        assert actor.calls == ["R0", "R1"]
        stored = file_store.get_session(session.session_id)
        assert stored is not None
        assert stored.status == SessionStatus.STOPPED
        assert [item.status for item in file_store.get_items(session.session_id)] == [
            ItemStatus.DONE,
            ItemStatus.DONE,
            ItemStatus.PENDING,
        ]

    def test_stopped_session_resumes_where_it_left_off(self, make_control: MakeControl) -> None:
        gate = ItemGate("R0")
        second = ScriptedActor()
        control = make_control(ScriptedActor(on_process=gate), second)
        session = control.start(make_records(3), label="input.csv")
        assert gate.entered.wait(5)
        threading.Timer(0.2, gate.release).start()
        control.stop()

        resumed = control.resume_session(session.session_id)
        assert resumed.status == SessionStatus.RUNNING
        assert control.wait(timeout=5)
        assert second.calls == ["R1", "R2"]

    def test_abort_requires_reason(self, make_control: MakeControl) -> None:
        control = make_control()
        with pytest.raises(ValueError):
            control.abort("  ")

    def test_abort_marks_session_error(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R0")
        control = make_control(ScriptedActor(on_process=gate))
        session = control.start(make_records(3), label="input.csv")
        assert gate.entered.wait(5)
        threading.Timer(0.2, gate.release).start()

        snapshot = control.abort("wrong file uploaded")

        assert snapshot.state == OrchestratorState.ERROR
        stored = file_store.get_session(session.session_id)
        assert stored is not None
        assert stored.status == SessionStatus.ERROR
        assert stored.error_message == "wrong file uploaded"

    @pytest.mark.parametrize("command", ["pause", "resume", "stop"])
    def test_commands_without_active_run(self, make_control: MakeControl, command: str) -> None:
        control = make_control()
        with pytest.raises(ControlConflictError, match="No active run"):
            getattr(control, command)()

    def test_resume_while_running_rejected(self, make_control: MakeControl) -> None:
        gate = ItemGate("R0")
        control = make_control(ScriptedActor(on_process=gate))
        control.start(make_records(2))
        try:
            assert gate.entered.wait(5)
            with pytest.raises(ControlConflictError):
                control.resume()
        finally:
            gate.release()
            control.wait(timeout=5)

    def test_shutdown_without_run_is_noop(self, make_control: MakeControl) -> None:
        make_control().shutdown()

    def test_shutdown_stops_active_run(self, make_control: MakeControl) -> None:
        gate = ItemGate("R0")
        actor = ScriptedActor(on_process=gate)
        control = make_control(actor)
        control.start(make_records(3))
        assert gate.entered.wait(5)
        threading.Timer(0.2, gate.release).start()
        control.shutdown()
        assert not control.is_active
        assert actor.released
        assert control.status().state == OrchestratorState.STOPPED


class TestUnconfirmedCommands:
    def test_stop_not_confirmed_raises_and_stays_requested(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R0")
        actor = ScriptedActor(on_process=gate)
        control = make_control(actor, timeout=0.2)
        session = control.start(make_records(3))
        try:
            assert gate.entered.wait(5)
            with pytest.raises(CommandNotConfirmedError, match="stop not confirmed within 0.2s") as exc_info:
                control.stop()

            assert exc_info.value.snapshot.state == OrchestratorState.STOPPING
            assert not actor.released
        finally:
            gate.release()
        assert control.wait(timeout=5)

        assert control.status().state == OrchestratorState.STOPPED
        assert actor.released
        assert actor.calls == ["R0"]
        stored = file_store.get_session(session.session_id)
        assert stored is not None
        assert stored.status == SessionStatus.STOPPED

    def test_abort_not_confirmed_raises(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        gate = ItemGate("R0")
        control = make_control(ScriptedActor(on_process=gate), timeout=0.2)
        session = control.start(make_records(2))
        try:
            assert gate.entered.wait(5)
            with pytest.raises(CommandNotConfirmedError, match="abort not confirmed"):
                control.abort("operator cancelled")
        finally:
            gate.release()
        assert control.wait(timeout=5)

        stored = file_store.get_session(session.session_id)
        assert stored is not None
        assert stored.status == SessionStatus.ERROR
        assert stored.error_message == "operator cancelled"

    def test_pause_not_confirmed_raises_and_lands_later(self, make_control: MakeControl) -> None:
        gate = ItemGate("R0")
        actor = ScriptedActor(on_process=gate)
        control = make_control(actor, timeout=0.5)
        control.start(make_records(2))
        try:
            assert gate.entered.wait(5)
            with pytest.raises(CommandNotConfirmedError, match="pause not confirmed") as exc_info:
                control.pause()
            assert exc_info.value.snapshot.state == OrchestratorState.PAUSING
        finally:
            gate.release()

        # The pause stays requested and parks the loop once R0 finishes
        assert control.pause().state == OrchestratorState.PAUSED
        assert actor.calls == ["R0"]
        control.resume()
        assert control.wait(timeout=5)
        assert actor.calls == ["R0", "R1"]

    def test_shutdown_reports_unconfirmed_stop(self, make_control: MakeControl) -> None:
        gate = ItemGate("R0")
        control = make_control(ScriptedActor(on_process=gate), timeout=0.2)
        control.start(make_records(2))
        try:
            assert gate.entered.wait(5)
            control.shutdown()
            assert control.is_active
        finally:
            gate.release()
        assert control.wait(timeout=5)
        assert control.status().state == OrchestratorState.STOPPED


class TestResumeSession:
    @staticmethod
    def _finished_session(control: ControlService) -> int:
        session = control.start(make_records(2))
        assert control.wait(timeout=5)
        return session.session_id

    def test_missing_session(self, make_control: MakeControl) -> None:
        with pytest.raises(SessionNotFoundError):
            make_control().resume_session(404)

    def test_completed_session_with_failures_needs_force(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        failing = ScriptedActor({"R1": [RuntimeError("a"), RuntimeError("b")]})
        retry_actor = ScriptedActor()
        control = make_control(failing, retry_actor)
        session_id = self._finished_session(control)

        with pytest.raises(ControlConflictError, match="force"):
            control.resume_session(session_id)

        control.resume_session(session_id, force=True)
        assert control.wait(timeout=5)
        assert retry_actor.calls == ["R1"]
        stored = file_store.get_session(session_id)
        assert stored is not None
        assert (stored.status, stored.succeeded, stored.failed) == (SessionStatus.COMPLETED, 2, 0)

    def test_fully_done_session_has_nothing_to_resume(self, make_control: MakeControl) -> None:
        control = make_control()
        session_id = self._finished_session(control)
        with pytest.raises(NothingToResumeError):
            control.resume_session(session_id, force=True)

    def test_resume_latest_without_candidates(self, make_control: MakeControl) -> None:
        with pytest.raises(NothingToResumeError):
            make_control().resume_latest()

    def test_resume_latest_picks_crashed_session(self, make_control: MakeControl, file_store: CheckpointStore) -> None:
        # A session left "running" by a process that died
        session_id = file_store.create_session("crashed", make_records(2))
        actor = ScriptedActor()
        control = make_control(actor)

        session = control.resume_latest()
        assert session.session_id == session_id
        assert control.wait(timeout=5)
        assert actor.calls == ["R0", "R1"]


class TestQueries:
    def test_status_idle(self, make_control: MakeControl) -> None:
        assert make_control().status() == IDLE_SNAPSHOT

    def test_history_and_detail(self, make_control: MakeControl) -> None:
        control = make_control()
        first = control.start(make_records(1), label="a")
        control.wait(timeout=5)
        second = control.start(make_records(2), label="b")
        control.wait(timeout=5)

        history = control.history(limit=10)
        assert [session.session_id for session in history] == [second.session_id, first.session_id]

        detail = control.session_detail(second.session_id)
        assert detail.session.label == "b"
        assert [item.status for item in detail.items] == [ItemStatus.DONE, ItemStatus.DONE]

    def test_detail_missing(self, make_control: MakeControl) -> None:
        with pytest.raises(SessionNotFoundError):
            make_control().session_detail(404)

    def test_recent_logs_cover_the_run(self, make_control: MakeControl) -> None:
        control = make_control()
        control.start(make_records(2))
        control.wait(timeout=5)
        messages = [entry.message for entry in control.recent_logs()]
        assert any("Record 1/2" in message for message in messages)
        assert any("completed" in message for message in messages)

    def test_from_settings(self, file_store: CheckpointStore, publisher: ProgressPublisher) -> None:
        settings = FormRunnerSettings(actor={"username": "u", "password": "p"}, retry={"max_attempts": 3, "backoff_seconds": 0})
        actor = ScriptedActor()
        control = ControlService.from_settings(settings, file_store, publisher, lambda: actor)
        control.start(make_records(1))
        control.wait(timeout=5)
        assert actor.credentials == Credentials(username="u", password="p")
