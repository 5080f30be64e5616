"""Checkpoint persistence: sessions, work items and recovery."""

from formrunner.core.checkpoint.database import CheckpointDB
from formrunner.core.checkpoint.recovery import RecoveryManager, first_unfinished_index, progress_from_items
from formrunner.core.checkpoint.store import CheckpointStore

__all__ = [
    "CheckpointDB",
    "CheckpointStore",
    "RecoveryManager",
    "first_unfinished_index",
    "progress_from_items",
]
