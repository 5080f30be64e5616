"""
formrunner: resumable sequential job orchestration for form-driven batch work.

Drives an ordered set of records through an external actor one at a time,
checkpointing after every item so a run can be paused, stopped, and resumed
after a crash without losing or repeating completed work.
"""

__version__ = "0.1.0"
