# src/formrunner/core/checkpoint/schema.py
"""SQLAlchemy table definitions for the checkpoint store.

Uses SQLAlchemy Core (not ORM) for explicit control over transactions.
Work items are structured rows keyed by (session_id, item_index); status
lives in its own column and is never parsed out of the payload.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Text,
    Table,
)

metadata = MetaData()

sessions_table = Table(
    "sessions",
    metadata,
    Column("session_id", Integer, primary_key=True, autoincrement=True),
    Column("label", String(512), nullable=False),
    Column("status", String(32), nullable=False),  # SessionStatus
    Column("total", Integer, nullable=False),
    Column("processed", Integer, nullable=False, default=0),
    Column("succeeded", Integer, nullable=False, default=0),
    Column("failed", Integer, nullable=False, default=0),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("ended_at", DateTime(timezone=True)),
    Column("error_message", Text),
    CheckConstraint("processed = succeeded + failed", name="ck_sessions_counters"),
    CheckConstraint("processed <= total", name="ck_sessions_processed_le_total"),
)

Index("ix_sessions_status_started", sessions_table.c.status, sessions_table.c.started_at)

work_items_table = Table(
    "work_items",
    metadata,
    Column("session_id", Integer, ForeignKey("sessions.session_id", ondelete="CASCADE"), nullable=False),
    Column("item_index", Integer, nullable=False),
    Column("status", String(32), nullable=False),  # ItemStatus
    Column("note", Text),
    Column("payload_json", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("session_id", "item_index"),
)

Index("ix_work_items_session_status", work_items_table.c.session_id, work_items_table.c.status)
