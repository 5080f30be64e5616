# tests/fixtures/actors.py
"""Scripted ExternalActor implementations for tests.

ScriptedActor processes records by their "id" field. Outcomes are scripted
per id as a list consumed one call at a time: a string is a successful
note, an exception instance is raised. Ids without a script succeed with
the note "ok <id>".
"""

import threading
from collections.abc import Callable, Mapping
from typing import Any

from formrunner.contracts import Credentials

Outcome = str | Exception


class ScriptedActor:
    """Deterministic actor with call recording and an optional per-item hook."""

    def __init__(
        self,
        outcomes: Mapping[str, list[Outcome]] | None = None,
        *,
        login_error: Exception | None = None,
        on_process: Callable[[Mapping[str, Any]], None] | None = None,
    ) -> None:
        self._outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self._login_error = login_error
        self._on_process = on_process
        self._lock = threading.Lock()
        self.credentials: Credentials | None = None
        self.calls: list[str] = []
        self.release_count = 0

    @property
    def released(self) -> bool:
        return self.release_count > 0

    def establish_session(self, credentials: Credentials) -> None:
        if self._login_error is not None:
            raise self._login_error
        self.credentials = credentials

    def process_item(self, payload: Mapping[str, Any]) -> str:
        record_id = str(payload["id"])
        with self._lock:
            self.calls.append(record_id)
        if self._on_process is not None:
            self._on_process(payload)
        with self._lock:
            script = self._outcomes.get(record_id)
            outcome: Outcome = script.pop(0) if script else f"ok {record_id}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def release(self) -> None:
        self.release_count += 1


class ItemGate:
    """Blocks the actor inside one record until the test lets it continue.

    Example:
        gate = ItemGate("R0")
        actor = ScriptedActor(on_process=gate)
        ... start the run on a worker thread ...
        gate.entered.wait(5)
        ... issue a control command while R0 is in flight ...
        gate.release()
    """

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        self.entered = threading.Event()
        self._proceed = threading.Event()

    def __call__(self, payload: Mapping[str, Any]) -> None:
        if str(payload["id"]) == self.record_id:
            self.entered.set()
            if not self._proceed.wait(timeout=10):
                raise TimeoutError(f"gate for {self.record_id} was never released")

    def release(self) -> None:
        self._proceed.set()


def make_records(count: int) -> list[dict[str, Any]]:
    """Records with ids R0..R<count-1>."""
    return [{"id": f"R{index}", "name": f"record {index}"} for index in range(count)]
