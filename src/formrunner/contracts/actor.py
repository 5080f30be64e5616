"""External actor contract.

The actor performs the vendor-specific workflow for one record. The
orchestrator treats it as an opaque capability: it knows only these three
operations and that any of them may raise.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class Credentials:
    """Login material handed to ``ExternalActor.establish_session``."""

    username: str
    password: str = field(repr=False)


@runtime_checkable
class ExternalActor(Protocol):
    """Stateful collaborator that processes records one at a time.

    Lifecycle:
        establish_session() once per run, then process_item() any number
        of times, then release(). release() is always called when a run
        ends, including after failures, and must be idempotent.
    """

    def establish_session(self, credentials: Credentials) -> None:
        """Log in and make the actor ready. Raises on failure."""
        ...

    def process_item(self, payload: Mapping[str, Any]) -> str:
        """Process one record and return an outcome note. Raises on failure."""
        ...

    def release(self) -> None:
        """Free held resources. Safe to call more than once."""
        ...
