"""Session and work item records.

Session is a read-only view returned by the checkpoint store. WorkItem is
the mutable per-record state owned by the orchestrator and handed to the
store for persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from formrunner.contracts.enums import ItemStatus, SessionStatus


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Reject values that are not instances of the expected enum type.

    Rows read back from our own database must already be typed; a bare
    string here means a conversion was skipped somewhere.
    """
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class Session:
    """One batch run over an ordered set of records."""

    session_id: int
    label: str
    status: SessionStatus
    total: int
    processed: int
    succeeded: int
    failed: int
    started_at: datetime
    ended_at: datetime | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, SessionStatus, "status")

    @property
    def remaining(self) -> int:
        return self.total - self.processed

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "label": self.label,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "started_at": _isoformat(self.started_at),
            "ended_at": _isoformat(self.ended_at),
            "error_message": self.error_message,
        }


@dataclass(slots=True)
class WorkItem:
    """Processing state of one input record within a session.

    ``index`` is the record's immutable position in the input. ``payload``
    is opaque to the orchestrator, which only reads and writes the status
    fields.
    """

    index: int
    payload: dict[str, Any]
    status: ItemStatus = ItemStatus.PENDING
    note: str | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, ItemStatus, "status")
        if self.index < 0:
            raise ValueError(f"index must be >= 0, got {self.index}")

    @property
    def is_finished(self) -> bool:
        return self.status in (ItemStatus.DONE, ItemStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "note": self.note,
            "updated_at": _isoformat(self.updated_at),
            "payload": dict(self.payload),
        }


@dataclass(frozen=True, slots=True)
class SessionDetail:
    """A session together with all of its work items, ordered by index."""

    session: Session
    items: tuple[WorkItem, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "items": [item.to_dict() for item in self.items],
        }
