# src/formrunner/engine/orchestrator.py
"""Orchestrator: drives one session's work items through the external actor.

Lifecycle:
    idle -> initializing -> running <-> pausing -> paused
    running/paused -> stopping -> stopped
    running -> completed
    initializing/running -> error

One Orchestrator instance handles exactly one run. The processing loop runs
on the thread that calls run(); control requests (pause, resume, stop,
abort) and snapshot() are called from other threads and coordinate through
a single condition variable. Pause and stop take effect only at item
boundaries; stop additionally cancels pending retry attempts.

For every item the checkpoint is written before the matching status event
is published.
"""

import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from formrunner.contracts import (
    ControlConflictError,
    Credentials,
    ExternalActor,
    InitializationError,
    ItemExecutionError,
    ItemStatus,
    OrchestratorState,
    PersistenceError,
    ResumePoint,
    SessionProgress,
    SessionStatus,
    StatusSnapshot,
    WorkItem,
)
from formrunner.core.checkpoint.store import CheckpointStore
from formrunner.core.logging import get_logger
from formrunner.engine.retry import RetryConfig, RetryController
from formrunner.progress.publisher import ProgressPublisher

logger = get_logger(__name__)

_FINAL_SESSION_STATUS: dict[OrchestratorState, SessionStatus] = {
    OrchestratorState.COMPLETED: SessionStatus.COMPLETED,
    OrchestratorState.STOPPED: SessionStatus.STOPPED,
    OrchestratorState.ERROR: SessionStatus.ERROR,
}

_SESSION_TO_FINAL_STATE = {status: state for state, status in _FINAL_SESSION_STATUS.items()}


class Orchestrator:
    """State machine for a single batch run.

    Example:
        orchestrator = Orchestrator(store, publisher, actor, credentials=creds)
        orchestrator.prepare_new(records, label="input.csv")
        worker = threading.Thread(target=orchestrator.run)
        worker.start()
        ...
        orchestrator.request_pause(timeout=30)
    """

    def __init__(
        self,
        store: CheckpointStore,
        publisher: ProgressPublisher,
        actor: ExternalActor,
        *,
        credentials: Credentials,
        retry_config: RetryConfig | None = None,
        write_retries: int = 1,
        fail_on_write_error: bool = False,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._actor = actor
        self._credentials = credentials
        self._write_retries = write_retries
        self._fail_on_write_error = fail_on_write_error

        # Default Condition lock is an RLock; snapshot() nests inside locked sections
        self._condition = threading.Condition()
        self._cancel = threading.Event()
        self._retry = RetryController(retry_config or RetryConfig(), publisher, self._cancel)

        self._state = OrchestratorState.IDLE
        self._pause_requested = False
        self._stop_requested = False
        self._abort_reason: str | None = None
        self._error_message: str | None = None
        self._actor_released = False
        self._checkpoint_failures = 0

        self._session_id: int | None = None
        self._label: str | None = None
        self._items: list[WorkItem] = []
        self._start_index = 0
        self._current_index: int | None = None
        self._progress = SessionProgress(processed=0, succeeded=0, failed=0)

    # === Setup ===

    def prepare_new(self, records: Sequence[Mapping[str, Any]], label: str) -> int:
        """Create a session for ``records`` and get ready to run it.

        Returns:
            The new session id.

        Raises:
            ControlConflictError: No records, or this orchestrator was
                already prepared.
            PersistenceError: The session could not be created.
        """
        if not records:
            raise ControlConflictError("No records to process")
        self._require_state(OrchestratorState.IDLE, "prepare a run")

        session_id = self._store.create_session(label, records)
        with self._condition:
            self._session_id = session_id
            self._label = label
            self._items = [WorkItem(index=index, payload=dict(record)) for index, record in enumerate(records)]
            self._start_index = 0
            self._progress = SessionProgress(processed=0, succeeded=0, failed=0)
            self._state = OrchestratorState.INITIALIZING
        self._publisher.clear_logs()
        self._publisher.info(f"Session {session_id} created: {len(records)} records from {label}")
        self._publish_status()
        return session_id

    def prepare_resume(self, point: ResumePoint) -> int:
        """Load a stored session and get ready to continue it.

        Counters are taken from the item statuses in ``point``, and the
        session is marked running again.
        """
        self._require_state(OrchestratorState.IDLE, "resume a session")
        session_id = point.session.session_id

        self._store.set_session_status(session_id, SessionStatus.RUNNING)
        self._store.update_session_progress(
            session_id,
            processed=point.progress.processed,
            succeeded=point.progress.succeeded,
            failed=point.progress.failed,
        )
        with self._condition:
            self._session_id = session_id
            self._label = point.session.label
            self._items = [
                WorkItem(index=item.index, payload=dict(item.payload), status=item.status, note=item.note, updated_at=item.updated_at)
                for item in point.items
            ]
            self._start_index = point.start_index
            self._progress = point.progress
            self._state = OrchestratorState.INITIALIZING
        self._publisher.clear_logs()
        self._publisher.info(
            f"Resuming session {session_id} at record {point.start_index + 1}/{len(point.items)} "
            f"({point.progress.succeeded} succeeded, {point.progress.failed} failed so far)"
        )
        self._publish_status()
        return session_id

    def _require_state(self, expected: OrchestratorState, action: str) -> None:
        with self._condition:
            if self._state != expected:
                raise ControlConflictError(f"Cannot {action} while {self._state.value}")

    # === Queries ===

    @property
    def session_id(self) -> int | None:
        return self._session_id

    @property
    def state(self) -> OrchestratorState:
        with self._condition:
            return self._state

    @property
    def pause_pending(self) -> bool:
        """A pause was requested and has not landed, been cancelled or been overtaken by the end of the run."""
        with self._condition:
            return self._pause_requested and not self._state.is_final and self._state != OrchestratorState.PAUSED

    @property
    def start_index(self) -> int:
        return self._start_index

    @property
    def checkpoint_failures(self) -> int:
        """Checkpoint writes that failed even after retries (non-fatal mode)."""
        return self._checkpoint_failures

    def snapshot(self) -> StatusSnapshot:
        with self._condition:
            return StatusSnapshot(
                state=self._state,
                session_id=self._session_id,
                label=self._label,
                total=len(self._items),
                processed=self._progress.processed,
                succeeded=self._progress.succeeded,
                failed=self._progress.failed,
                current_index=self._current_index,
                error_message=self._error_message,
            )

    def wait_until_finished(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: self._state.is_final, timeout)

    # === Control ===

    def request_pause(self, timeout: float | None = None) -> bool:
        """Ask the loop to park at the next item boundary.

        Blocks until the paused status is persisted, the run ends, the pause
        is cancelled by a resume, or ``timeout`` elapses.

        Returns:
            True if the run is paused when this returns.

        Raises:
            ControlConflictError: The run is not in a pausable state.
        """
        with self._condition:
            if self._state == OrchestratorState.PAUSED:
                return True
            if self._state not in (OrchestratorState.INITIALIZING, OrchestratorState.RUNNING, OrchestratorState.PAUSING):
                raise ControlConflictError(f"Cannot pause while {self._state.value}")
            if not self._pause_requested:
                self._pause_requested = True
                if self._state == OrchestratorState.RUNNING:
                    self._state = OrchestratorState.PAUSING
                self._publisher.info("Pause requested; pausing after the current record")
                self._publish_status()
            self._condition.notify_all()
            self._condition.wait_for(
                lambda: self._state == OrchestratorState.PAUSED or self._state.is_final or not self._pause_requested,
                timeout,
            )
            return self._state == OrchestratorState.PAUSED

    def request_resume(self) -> None:
        """Continue a paused run, or cancel a pause that has not landed yet.

        Raises:
            ControlConflictError: The run is neither paused nor pausing.
        """
        with self._condition:
            if not self._pause_requested or self._state not in (
                OrchestratorState.PAUSED,
                OrchestratorState.PAUSING,
                OrchestratorState.INITIALIZING,
            ):
                raise ControlConflictError(f"Cannot resume while {self._state.value}")
            self._pause_requested = False
            if self._state == OrchestratorState.PAUSING:
                self._state = OrchestratorState.RUNNING
                self._publish_status()
            self._condition.notify_all()

    def request_stop(self, timeout: float | None = None) -> bool:
        """Halt after the current item and release the actor.

        Returns:
            True if the run finished (actor released, session closed)
            within ``timeout``.

        Raises:
            ControlConflictError: There is no run to stop.
        """
        return self._request_halt(reason=None, timeout=timeout)

    def abort(self, reason: str, timeout: float | None = None) -> bool:
        """Halt like stop, but end the session in ``error`` with ``reason``."""
        return self._request_halt(reason=reason, timeout=timeout)

    def _request_halt(self, *, reason: str | None, timeout: float | None) -> bool:
        with self._condition:
            if self._state == OrchestratorState.IDLE or self._state.is_final:
                action = "abort" if reason is not None else "stop"
                raise ControlConflictError(f"Cannot {action} while {self._state.value}")
            if not self._stop_requested:
                self._stop_requested = True
                self._abort_reason = reason
                self._cancel.set()
                self._state = OrchestratorState.STOPPING
                if reason is None:
                    self._publisher.info("Stop requested; stopping after the current record")
                else:
                    self._publisher.error(f"Abort requested: {reason}")
                self._publish_status()
            self._condition.notify_all()
            return self._condition.wait_for(lambda: self._state.is_final, timeout)

    # === Processing loop ===

    def run(self) -> OrchestratorState:
        """Process the prepared session to the end. Blocks.

        Returns:
            The final state (completed, stopped or error).
        """
        with self._condition:
            # STOPPING here means a stop arrived before the worker got going
            if self._state not in (OrchestratorState.INITIALIZING, OrchestratorState.STOPPING) or self._session_id is None:
                raise ControlConflictError(f"Cannot run while {self._state.value}")
        session_id = self._session_id
        assert session_id is not None
        log = logger.bind(session_id=session_id)

        try:
            if self._halt_requested():
                self._finish(self._halt_status())
                return self.state

            self._initialize_actor()
            with self._condition:
                if self._state == OrchestratorState.INITIALIZING:
                    self._state = OrchestratorState.PAUSING if self._pause_requested else OrchestratorState.RUNNING
            self._publish_status()
            log.info("run_started", start_index=self._start_index, total=len(self._items))

            for item in self._items[self._start_index :]:
                if item.status == ItemStatus.DONE:
                    continue
                if not self._wait_at_boundary():
                    break
                self._process_item(item)

            self._finish(self._halt_status())
        except InitializationError as e:
            log.error("initialization_failed", error=str(e))
            self._publisher.error(f"Initialization failed: {e}")
            self._finish(SessionStatus.ERROR, str(e))
        except PersistenceError as e:
            log.error("run_failed_on_checkpoint", error=str(e))
            self._finish(SessionStatus.ERROR, f"Checkpoint write failed: {e}")
        except Exception as e:
            log.exception("run_crashed")
            self._finish(SessionStatus.ERROR, f"Unexpected error: {e}")
            raise
        finally:
            self._release_actor()
        return self.state

    def _initialize_actor(self) -> None:
        self._publisher.info("Establishing actor session")
        try:
            self._actor.establish_session(self._credentials)
        except InitializationError:
            raise
        except Exception as e:
            raise InitializationError(str(e) or type(e).__name__) from e
        self._publisher.success("Actor session established")

    def _halt_requested(self) -> bool:
        with self._condition:
            return self._stop_requested

    def _halt_status(self) -> SessionStatus:
        with self._condition:
            if self._abort_reason is not None:
                return SessionStatus.ERROR
            if self._stop_requested and any(not item.is_finished for item in self._items):
                return SessionStatus.STOPPED
            return SessionStatus.COMPLETED

    def _wait_at_boundary(self) -> bool:
        """Honor pause and stop between items. Returns False to stop."""
        with self._condition:
            if self._stop_requested:
                return False
            if not self._pause_requested:
                return True

        session_id = self._session_id
        assert session_id is not None
        # Persist before anyone waiting in request_pause() is released
        self._write_with_retries("pause", lambda: self._store.set_session_status(session_id, SessionStatus.PAUSED))

        with self._condition:
            self._state = OrchestratorState.PAUSED
            self._publisher.info("Paused")
            self._publish_status()
            self._condition.notify_all()
            while self._pause_requested and not self._stop_requested:
                self._condition.wait()
            if self._stop_requested:
                return False

        self._write_with_retries("resume", lambda: self._store.set_session_status(session_id, SessionStatus.RUNNING))
        with self._condition:
            if self._stop_requested:
                return False
            self._state = OrchestratorState.PAUSING if self._pause_requested else OrchestratorState.RUNNING
            self._publisher.info("Resumed")
            self._publish_status()
        return True

    def _process_item(self, item: WorkItem) -> None:
        session_id = self._session_id
        assert session_id is not None
        total = len(self._items)
        label = f"Record {item.index + 1}/{total}"
        previously_failed = item.status == ItemStatus.FAILED

        item.status = ItemStatus.IN_PROGRESS
        item.note = None
        item.updated_at = datetime.now(UTC)
        self._checkpoint(item, self._progress)
        with self._condition:
            self._current_index = item.index
        self._publisher.info(f"{label}: processing")
        self._publish_status()

        progress = self._progress
        try:
            note = self._retry.execute(lambda: self._actor.process_item(item.payload), index=item.index, label=label)
        except ItemExecutionError as e:
            item.status = ItemStatus.FAILED
            item.note = e.note
            if not previously_failed:
                progress = SessionProgress(
                    processed=progress.processed + 1,
                    succeeded=progress.succeeded,
                    failed=progress.failed + 1,
                )
            logger.info("item_failed", session_id=session_id, index=item.index, attempts=e.attempts, cancelled=e.cancelled)
        else:
            item.status = ItemStatus.DONE
            item.note = note
            if previously_failed:
                progress = SessionProgress(
                    processed=progress.processed,
                    succeeded=progress.succeeded + 1,
                    failed=progress.failed - 1,
                )
            else:
                progress = SessionProgress(
                    processed=progress.processed + 1,
                    succeeded=progress.succeeded + 1,
                    failed=progress.failed,
                )
        item.updated_at = datetime.now(UTC)

        self._checkpoint(item, progress)
        with self._condition:
            self._progress = progress
            self._current_index = None
        self._publish_status()

    # === Persistence helpers ===

    def _checkpoint(self, item: WorkItem, progress: SessionProgress) -> None:
        session_id = self._session_id
        assert session_id is not None
        self._write_with_retries("save_checkpoint", lambda: self._store.save_checkpoint(session_id, [item], progress))

    def _write_with_retries(self, operation: str, write: Callable[[], None]) -> bool:
        """Run a checkpoint write with the configured retries.

        Returns:
            True if the write landed. False if it failed in non-fatal mode,
            leaving the stored state behind the in-memory state.

        Raises:
            PersistenceError: The write failed and fail_on_write_error is set.
        """
        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(1 + self._write_retries),
                wait=wait_fixed(0.1),
                retry=retry_if_exception_type(PersistenceError),
                reraise=True,
            ):
                with attempt_state:
                    write()
        except PersistenceError as e:
            self._checkpoint_failures += 1
            logger.error("checkpoint_write_failed", session_id=self._session_id, operation=operation, error=str(e))
            if self._fail_on_write_error:
                raise
            self._publisher.error(f"Checkpoint write failed ({operation}); continuing: {e}")
            return False
        return True

    def _finish(self, status: SessionStatus, error_message: str | None = None) -> None:
        """Release the actor, close the session, then announce the final state."""
        session_id = self._session_id
        assert session_id is not None
        if status == SessionStatus.ERROR and error_message is None:
            error_message = self._abort_reason

        self._release_actor()
        try:
            self._store.close_session(session_id, status, error_message=error_message)
        except PersistenceError as e:
            self._checkpoint_failures += 1
            logger.error("session_close_failed", session_id=session_id, status=status.value, error=str(e))
            self._publisher.error(f"Could not record final status {status.value}: {e}")

        with self._condition:
            self._state = _SESSION_TO_FINAL_STATE[status]
            self._error_message = error_message
            self._current_index = None
            progress = self._progress
            if status == SessionStatus.COMPLETED:
                self._publisher.success(
                    f"Session {session_id} completed: {progress.succeeded} succeeded, {progress.failed} failed of {len(self._items)}"
                )
            elif status == SessionStatus.STOPPED:
                self._publisher.info(f"Session {session_id} stopped after {progress.processed}/{len(self._items)} records")
            else:
                self._publisher.error(f"Session {session_id} ended in error: {error_message}")
            self._publish_status()
            self._condition.notify_all()
        logger.info("run_finished", session_id=session_id, status=status.value, processed=progress.processed)

    def _release_actor(self) -> None:
        if self._actor_released:
            return
        self._actor_released = True
        try:
            self._actor.release()
        except Exception as e:
            # The run is ending either way; record the failure and carry on closing
            logger.warning("actor_release_failed", session_id=self._session_id, error=str(e))
            self._publisher.error(f"Actor release failed: {e}")

    def _publish_status(self) -> None:
        self._publisher.publish_status(self.snapshot())
