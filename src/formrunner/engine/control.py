# src/formrunner/engine/control.py
"""ControlService: transport-independent control surface.

Owns at most one active Orchestrator per process and runs it on a worker
thread. Every command either takes effect or raises synchronously; the
CLI and the HTTP server are thin adapters over this class.
"""

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from formrunner.contracts import (
    IDLE_SNAPSHOT,
    AlreadyRunningError,
    CommandNotConfirmedError,
    ControlConflictError,
    Credentials,
    ExternalActor,
    InitializationError,
    LogEntry,
    NothingToResumeError,
    Session,
    SessionDetail,
    SessionNotFoundError,
    StatusSnapshot,
)
from formrunner.core.checkpoint.recovery import RecoveryManager
from formrunner.core.checkpoint.store import CheckpointStore
from formrunner.core.config import CheckpointSettings, ControlSettings, FormRunnerSettings
from formrunner.core.logging import get_logger
from formrunner.engine.orchestrator import Orchestrator
from formrunner.engine.retry import RetryConfig
from formrunner.progress.publisher import ProgressPublisher

logger = get_logger(__name__)

ActorFactory = Callable[[], ExternalActor]


class ControlService:
    """Start, steer and inspect batch runs.

    Example:
        control = ControlService(store, publisher, lambda: MyActor(), credentials=creds)
        control.start(records, label="input.csv")
        control.pause()
        control.resume()
        control.wait()
    """

    def __init__(
        self,
        store: CheckpointStore,
        publisher: ProgressPublisher,
        actor_factory: ActorFactory,
        *,
        credentials: Credentials,
        retry_config: RetryConfig | None = None,
        checkpoint: CheckpointSettings | None = None,
        control: ControlSettings | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._actor_factory = actor_factory
        self._credentials = credentials
        self._retry_config = retry_config or RetryConfig()
        self._checkpoint = checkpoint or CheckpointSettings()
        self._control = control or ControlSettings()
        self._recovery = RecoveryManager(store)

        self._lock = threading.Lock()
        self._orchestrator: Orchestrator | None = None
        self._worker: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: FormRunnerSettings,
        store: CheckpointStore,
        publisher: ProgressPublisher,
        actor_factory: ActorFactory,
    ) -> "ControlService":
        return cls(
            store,
            publisher,
            actor_factory,
            credentials=settings.actor.credentials(),
            retry_config=RetryConfig.from_settings(settings.retry),
            checkpoint=settings.checkpoint,
            control=settings.control,
        )

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def publisher(self) -> ProgressPublisher:
        return self._publisher

    # === Run lifecycle ===

    def start(self, records: Sequence[Mapping[str, Any]], label: str = "records") -> Session:
        """Create a session for ``records`` and start processing it.

        Raises:
            AlreadyRunningError: Another run is active in this process.
            ControlConflictError: ``records`` is empty.
            InitializationError: The actor could not be constructed.
            PersistenceError: The session could not be created.
        """
        if not records:
            raise ControlConflictError("No records to process")
        with self._lock:
            self._ensure_idle()
            orchestrator = self._new_orchestrator()
            session_id = orchestrator.prepare_new(records, label)
            self._launch(orchestrator)
        logger.info("run_launched", session_id=session_id, label=label, total=len(records))
        return self._get_session(session_id)

    def resume_session(self, session_id: int, *, force: bool = False) -> Session:
        """Continue a stored session from its first unfinished item.

        ``paused``, ``stopped`` and ``running`` sessions (the last left
        behind by a crashed process) can be resumed directly; ``completed``
        and ``error`` sessions need ``force``.

        Raises:
            AlreadyRunningError: A run is active in this process.
            SessionNotFoundError: No session with that id.
            NothingToResumeError: Every item is already done.
            ControlConflictError: The session needs ``force``.
        """
        with self._lock:
            self._ensure_idle()
            if self._store.get_session(session_id) is None:
                raise SessionNotFoundError(session_id)
            check = self._recovery.can_resume(session_id, force=force)
            if not check.can_resume:
                assert check.reason is not None
                if check.requires_force:
                    raise ControlConflictError(check.reason)
                raise NothingToResumeError(check.reason)
            point = self._recovery.get_resume_point(session_id)
            orchestrator = self._new_orchestrator()
            orchestrator.prepare_resume(point)
            self._launch(orchestrator)
        logger.info("run_resumed", session_id=session_id, start_index=point.start_index, force=force)
        return self._get_session(session_id)

    def resume_latest(self) -> Session:
        """Resume the most recent session still marked running or paused."""
        session = self._store.find_resumable_session()
        if session is None:
            raise NothingToResumeError("No running or paused session to resume")
        return self.resume_session(session.session_id)

    def pause(self) -> StatusSnapshot:
        """Pause at the next item boundary; returns once the pause is persisted.

        Returns early without pausing if the run ends or a resume cancels
        the pause first.

        Raises:
            ControlConflictError: No pausable run.
            CommandNotConfirmedError: The pause is still pending after
                ``control.pause_timeout_seconds``.
        """
        orchestrator = self._require_active()
        timeout = self._control.pause_timeout_seconds
        if not orchestrator.request_pause(timeout=timeout) and orchestrator.pause_pending:
            logger.warning("pause_not_confirmed", session_id=orchestrator.session_id, timeout=timeout)
            raise CommandNotConfirmedError("pause", timeout, orchestrator.snapshot())
        return orchestrator.snapshot()

    def resume(self) -> StatusSnapshot:
        """Continue the paused run in this process."""
        orchestrator = self._require_active()
        orchestrator.request_resume()
        return orchestrator.snapshot()

    def stop(self) -> StatusSnapshot:
        """Stop after the current item; returns once the actor is released.

        Raises:
            ControlConflictError: No active run.
            CommandNotConfirmedError: The run is still stopping after
                ``control.stop_timeout_seconds``; the stop stays requested.
        """
        orchestrator = self._require_active()
        timeout = self._control.stop_timeout_seconds
        if not orchestrator.request_stop(timeout=timeout):
            logger.warning("stop_not_confirmed", session_id=orchestrator.session_id, timeout=timeout)
            raise CommandNotConfirmedError("stop", timeout, orchestrator.snapshot())
        self._join_worker(timeout)
        return orchestrator.snapshot()

    def abort(self, reason: str) -> StatusSnapshot:
        """Stop and mark the session as failed with ``reason``.

        Raises the same errors as stop().
        """
        if not reason.strip():
            raise ValueError("abort reason must not be empty")
        orchestrator = self._require_active()
        timeout = self._control.stop_timeout_seconds
        if not orchestrator.abort(reason, timeout=timeout):
            logger.warning("abort_not_confirmed", session_id=orchestrator.session_id, timeout=timeout)
            raise CommandNotConfirmedError("abort", timeout, orchestrator.snapshot())
        self._join_worker(timeout)
        return orchestrator.snapshot()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current run finishes. True if nothing is running."""
        with self._lock:
            orchestrator = self._orchestrator
        if orchestrator is None:
            return True
        finished = orchestrator.wait_until_finished(timeout)
        if finished:
            self._join_worker(timeout)
        return finished

    def shutdown(self) -> None:
        """Stop any active run. Used on process exit."""
        with self._lock:
            orchestrator = self._orchestrator
        if orchestrator is not None and self._is_active(orchestrator):
            logger.info("shutdown_stopping_run", session_id=orchestrator.session_id)
            try:
                self.stop()
            except ControlConflictError:
                # Finished between the check and the stop request
                pass
            except CommandNotConfirmedError as e:
                logger.error("shutdown_stop_not_confirmed", session_id=orchestrator.session_id, error=str(e))

    # === Queries ===

    def status(self) -> StatusSnapshot:
        with self._lock:
            orchestrator = self._orchestrator
        if orchestrator is None:
            return IDLE_SNAPSHOT
        return orchestrator.snapshot()

    def recent_logs(self) -> tuple[LogEntry, ...]:
        return self._publisher.recent_logs()

    def history(self, limit: int = 50) -> list[Session]:
        return self._store.list_sessions(limit=limit)

    def session_detail(self, session_id: int) -> SessionDetail:
        detail = self._store.get_detail(session_id)
        if detail is None:
            raise SessionNotFoundError(session_id)
        return detail

    @property
    def is_active(self) -> bool:
        with self._lock:
            orchestrator = self._orchestrator
        return orchestrator is not None and self._is_active(orchestrator)

    # === Internals ===

    @staticmethod
    def _is_active(orchestrator: Orchestrator) -> bool:
        return not orchestrator.state.is_final

    def _ensure_idle(self) -> None:
        # Caller holds self._lock
        if self._orchestrator is not None and self._is_active(self._orchestrator):
            raise AlreadyRunningError(
                f"Session {self._orchestrator.session_id} is {self._orchestrator.state.value}; stop it before starting another run"
            )

    def _require_active(self) -> Orchestrator:
        with self._lock:
            orchestrator = self._orchestrator
        if orchestrator is None or not self._is_active(orchestrator):
            raise ControlConflictError("No active run")
        return orchestrator

    def _new_orchestrator(self) -> Orchestrator:
        try:
            actor = self._actor_factory()
        except Exception as e:
            raise InitializationError(f"Could not create actor: {e}") from e
        return Orchestrator(
            self._store,
            self._publisher,
            actor,
            credentials=self._credentials,
            retry_config=self._retry_config,
            write_retries=self._checkpoint.write_retries,
            fail_on_write_error=self._checkpoint.fail_on_write_error,
        )

    def _launch(self, orchestrator: Orchestrator) -> None:
        # Caller holds self._lock
        worker = threading.Thread(
            target=self._run_worker,
            args=(orchestrator,),
            name=f"formrunner-session-{orchestrator.session_id}",
            daemon=True,
        )
        self._orchestrator = orchestrator
        self._worker = worker
        worker.start()

    @staticmethod
    def _run_worker(orchestrator: Orchestrator) -> None:
        try:
            orchestrator.run()
        except Exception:
            # The orchestrator already closed the session as error
            logger.exception("worker_crashed", session_id=orchestrator.session_id)

    def _join_worker(self, timeout: float | None) -> None:
        with self._lock:
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)

    def _get_session(self, session_id: int) -> Session:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session
