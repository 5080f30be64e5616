# src/formrunner/core/checkpoint/store.py
"""CheckpointStore: durable session and work item state.

The store persists exactly what the orchestrator tells it and answers
queries about past sessions. It never decides status transitions itself.
Every public method runs in its own transaction; SQLAlchemy failures are
re-raised as PersistenceError so callers see one error type.
"""

import json
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Connection, and_, func, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError

from formrunner.contracts import (
    ItemStatus,
    PersistenceError,
    Session,
    SessionDetail,
    SessionProgress,
    SessionStatus,
    WorkItem,
)
from formrunner.core.checkpoint.database import CheckpointDB
from formrunner.core.checkpoint.schema import sessions_table, work_items_table
from formrunner.core.logging import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _session_from_row(row: Row[Any]) -> Session:
    started_at = _as_utc(row.started_at)
    assert started_at is not None  # NOT NULL column
    return Session(
        session_id=row.session_id,
        label=row.label,
        status=SessionStatus(row.status),
        total=row.total,
        processed=row.processed,
        succeeded=row.succeeded,
        failed=row.failed,
        started_at=started_at,
        ended_at=_as_utc(row.ended_at),
        error_message=row.error_message,
    )


def _item_from_row(row: Row[Any]) -> WorkItem:
    return WorkItem(
        index=row.item_index,
        payload=json.loads(row.payload_json),
        status=ItemStatus(row.status),
        note=row.note,
        updated_at=_as_utc(row.updated_at),
    )


class CheckpointStore:
    """Reads and writes sessions and work items.

    Example:
        store = CheckpointStore(CheckpointDB.in_memory())
        session_id = store.create_session("input.csv", [{"id": 1}, {"id": 2}])
        store.save_checkpoint(session_id, [item], SessionProgress(1, 1, 0))
    """

    def __init__(self, db: CheckpointDB) -> None:
        self._db = db
        # Serializes access so a shared in-memory connection is safe across threads
        self._lock = threading.RLock()

    @property
    def db(self) -> CheckpointDB:
        return self._db

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Connection]:
        with self._lock:
            try:
                with self._db.connection() as conn:
                    yield conn
            except SQLAlchemyError as e:
                logger.error("checkpoint_operation_failed", operation=operation, error=str(e))
                raise PersistenceError(f"Checkpoint {operation} failed: {e}") from e

    # === Writes ===

    def create_session(self, label: str, payloads: Sequence[Mapping[str, Any]]) -> int:
        """Create a running session with one pending work item per payload.

        Returns:
            The new session id.
        """
        now = _now()
        with self._transaction("create_session") as conn:
            result = conn.execute(
                insert(sessions_table).values(
                    label=label,
                    status=SessionStatus.RUNNING.value,
                    total=len(payloads),
                    processed=0,
                    succeeded=0,
                    failed=0,
                    started_at=now,
                )
            )
            primary_key = result.inserted_primary_key
            assert primary_key is not None
            session_id = int(primary_key[0])
            if payloads:
                conn.execute(
                    insert(work_items_table),
                    [
                        {
                            "session_id": session_id,
                            "item_index": index,
                            "status": ItemStatus.PENDING.value,
                            "note": None,
                            "payload_json": json.dumps(dict(payload), default=str),
                            "updated_at": now,
                        }
                        for index, payload in enumerate(payloads)
                    ],
                )
        logger.info("session_created", session_id=session_id, label=label, total=len(payloads))
        return session_id

    def update_items(self, session_id: int, items: Iterable[WorkItem]) -> None:
        """Overwrite the stored state of the given items, keyed by index."""
        with self._transaction("update_items") as conn:
            self._write_items(conn, session_id, items)

    def update_session_progress(
        self,
        session_id: int,
        processed: int,
        succeeded: int,
        failed: int,
        status: SessionStatus | None = None,
    ) -> None:
        """Write the session counters and, optionally, its status."""
        progress = SessionProgress(processed=processed, succeeded=succeeded, failed=failed, status=status)
        with self._transaction("update_session_progress") as conn:
            self._write_progress(conn, session_id, progress)

    def save_checkpoint(self, session_id: int, items: Iterable[WorkItem], progress: SessionProgress) -> None:
        """Persist item states and session counters in one transaction."""
        with self._transaction("save_checkpoint") as conn:
            self._write_items(conn, session_id, items)
            self._write_progress(conn, session_id, progress)

    def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        """Change the status of an active session (running <-> paused)."""
        if status.is_terminal:
            raise ValueError(f"Use close_session() for terminal status {status}")
        with self._transaction("set_session_status") as conn:
            result = conn.execute(
                update(sessions_table)
                .where(sessions_table.c.session_id == session_id)
                .values(status=status.value, ended_at=None, error_message=None)
            )
            self._require_row(result.rowcount, session_id)

    def close_session(self, session_id: int, terminal_status: SessionStatus, error_message: str | None = None) -> None:
        """Mark a session terminal and stamp its end time."""
        if not terminal_status.is_terminal:
            raise ValueError(f"close_session() requires a terminal status, got {terminal_status}")
        with self._transaction("close_session") as conn:
            result = conn.execute(
                update(sessions_table)
                .where(sessions_table.c.session_id == session_id)
                .values(status=terminal_status.value, ended_at=_now(), error_message=error_message)
            )
            self._require_row(result.rowcount, session_id)
        logger.info("session_closed", session_id=session_id, status=terminal_status.value)

    def reset_in_progress_items(self, session_id: int) -> int:
        """Return items left in-progress by a crashed process to pending.

        Returns:
            Number of items reset.
        """
        with self._transaction("reset_in_progress_items") as conn:
            result = conn.execute(
                update(work_items_table)
                .where(
                    and_(
                        work_items_table.c.session_id == session_id,
                        work_items_table.c.status == ItemStatus.IN_PROGRESS.value,
                    )
                )
                .values(status=ItemStatus.PENDING.value, updated_at=_now())
            )
            return int(result.rowcount)

    def _write_items(self, conn: Connection, session_id: int, items: Iterable[WorkItem]) -> None:
        for item in items:
            updated_at = item.updated_at or _now()
            result = conn.execute(
                update(work_items_table)
                .where(
                    and_(
                        work_items_table.c.session_id == session_id,
                        work_items_table.c.item_index == item.index,
                    )
                )
                .values(
                    status=item.status.value,
                    note=item.note,
                    payload_json=json.dumps(item.payload, default=str),
                    updated_at=updated_at,
                )
            )
            if result.rowcount == 0:
                conn.execute(
                    insert(work_items_table).values(
                        session_id=session_id,
                        item_index=item.index,
                        status=item.status.value,
                        note=item.note,
                        payload_json=json.dumps(item.payload, default=str),
                        updated_at=updated_at,
                    )
                )

    def _write_progress(self, conn: Connection, session_id: int, progress: SessionProgress) -> None:
        values: dict[str, Any] = {
            "processed": progress.processed,
            "succeeded": progress.succeeded,
            "failed": progress.failed,
        }
        if progress.status is not None:
            values["status"] = progress.status.value
        result = conn.execute(update(sessions_table).where(sessions_table.c.session_id == session_id).values(**values))
        self._require_row(result.rowcount, session_id)

    @staticmethod
    def _require_row(rowcount: int, session_id: int) -> None:
        if rowcount == 0:
            raise PersistenceError(f"Session {session_id} does not exist")

    # === Reads ===

    def get_session(self, session_id: int) -> Session | None:
        with self._transaction("get_session") as conn:
            row = conn.execute(select(sessions_table).where(sessions_table.c.session_id == session_id)).first()
        return _session_from_row(row) if row is not None else None

    def get_items(self, session_id: int) -> list[WorkItem]:
        """All work items of a session, ordered by index."""
        with self._transaction("get_items") as conn:
            rows = conn.execute(
                select(work_items_table).where(work_items_table.c.session_id == session_id).order_by(work_items_table.c.item_index)
            ).fetchall()
        return [_item_from_row(row) for row in rows]

    def get_detail(self, session_id: int) -> SessionDetail | None:
        """Session and items read in one transaction."""
        with self._transaction("get_detail") as conn:
            session_row = conn.execute(select(sessions_table).where(sessions_table.c.session_id == session_id)).first()
            if session_row is None:
                return None
            item_rows = conn.execute(
                select(work_items_table).where(work_items_table.c.session_id == session_id).order_by(work_items_table.c.item_index)
            ).fetchall()
        return SessionDetail(session=_session_from_row(session_row), items=tuple(_item_from_row(row) for row in item_rows))

    def list_sessions(self, limit: int = 50) -> list[Session]:
        """Most recently started sessions first."""
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        with self._transaction("list_sessions") as conn:
            rows = conn.execute(
                select(sessions_table).order_by(sessions_table.c.started_at.desc(), sessions_table.c.session_id.desc()).limit(limit)
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def find_resumable_session(self) -> Session | None:
        """The most recently started session still marked running or paused."""
        with self._transaction("find_resumable_session") as conn:
            row = conn.execute(
                select(sessions_table)
                .where(sessions_table.c.status.in_([SessionStatus.RUNNING.value, SessionStatus.PAUSED.value]))
                .order_by(sessions_table.c.started_at.desc(), sessions_table.c.session_id.desc())
                .limit(1)
            ).first()
        return _session_from_row(row) if row is not None else None

    def count_items_by_status(self, session_id: int) -> dict[ItemStatus, int]:
        with self._transaction("count_items_by_status") as conn:
            rows = conn.execute(
                select(work_items_table.c.status, func.count())
                .where(work_items_table.c.session_id == session_id)
                .group_by(work_items_table.c.status)
            ).fetchall()
        counts = dict.fromkeys(ItemStatus, 0)
        for status, count in rows:
            counts[ItemStatus(status)] = int(count)
        return counts
