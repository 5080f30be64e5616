# src/formrunner/actors/http.py
"""HttpFormActor: external actor that submits records to an HTTP form backend.

The actor logs in once per run by posting credentials to ``login_path``;
the session cookie is kept in the client's cookie jar. Each record is then
posted as JSON to ``submit_path``. A 2xx response is a success; anything
else, or a transport error, is a failure.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from formrunner.contracts import Credentials, InitializationError, ItemExecutionError

logger = structlog.get_logger(__name__)


class HttpActorOptions(BaseModel):
    """Options for the built-in ``http`` actor (``actor.options`` in settings)."""

    model_config = {"frozen": True, "extra": "forbid"}

    base_url: str = Field(description="Base URL of the form backend")
    login_path: str = Field(default="/login", description="Path that accepts the credential POST")
    submit_path: str = Field(default="/submit", description="Path that accepts one record per POST")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers sent with every request")
    note_field: str = Field(default="message", description="Response JSON field used as the outcome note")


def _response_message(response: httpx.Response, field: str) -> str | None:
    """Pull a human-readable message out of a JSON response, if there is one."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] if text else None
    if isinstance(body, dict) and field in body and body[field] is not None:
        return str(body[field])
    return None


class HttpFormActor:
    """ExternalActor backed by httpx.

    Example:
        actor = HttpFormActor(HttpActorOptions(base_url="https://forms.example.com"))
        actor.establish_session(Credentials("user", "secret"))
        note = actor.process_item({"policy": "123", "amount": "10.00"})
        actor.release()
    """

    def __init__(self, options: HttpActorOptions, *, transport: httpx.BaseTransport | None = None) -> None:
        self._options = options
        self._transport = transport
        self._client: httpx.Client | None = None

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> HttpFormActor:
        return cls(HttpActorOptions(**options))

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    def establish_session(self, credentials: Credentials) -> None:
        if self._client is not None:
            raise InitializationError("Session already established")
        client = httpx.Client(
            base_url=self._options.base_url,
            timeout=self._options.timeout_seconds,
            headers=self._options.headers,
            transport=self._transport,
        )
        try:
            response = client.post(
                self._options.login_path,
                json={"username": credentials.username, "password": credentials.password},
            )
        except httpx.HTTPError as e:
            client.close()
            raise InitializationError(f"Login request failed: {e}") from e
        if response.is_error:
            client.close()
            detail = _response_message(response, self._options.note_field)
            suffix = f": {detail}" if detail else ""
            raise InitializationError(f"Login rejected with HTTP {response.status_code}{suffix}")
        self._client = client
        logger.info("http_actor_session_established", base_url=self._options.base_url)

    def process_item(self, payload: Mapping[str, Any]) -> str:
        if self._client is None:
            raise ItemExecutionError("No active session; call establish_session() first")
        try:
            response = self._client.post(self._options.submit_path, json=dict(payload))
        except httpx.HTTPError as e:
            raise ItemExecutionError(f"Submit request failed: {e}") from e
        message = _response_message(response, self._options.note_field)
        if response.is_error:
            raise ItemExecutionError(message or f"Submit rejected with HTTP {response.status_code}")
        return message or "Submitted"

    def release(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        client.close()
        logger.debug("http_actor_released", base_url=self._options.base_url)
