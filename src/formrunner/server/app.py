# src/formrunner/server/app.py
"""Starlette ASGI application exposing the control surface over HTTP.

Usage:
    from formrunner.server.app import ControlServer

    server = ControlServer(control)
    app = server.app

Control commands that block (pause, stop, abort) run in the threadpool so
the event loop keeps serving status queries and progress streams.
"""

import asyncio
import contextlib
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from formrunner.contracts import (
    CommandNotConfirmedError,
    ControlConflictError,
    FormRunnerError,
    InitializationError,
    PersistenceError,
    RecordsFileError,
    SessionNotFoundError,
)
from formrunner.core.logging import get_logger
from formrunner.engine.control import ControlService
from formrunner.progress.publisher import Subscription
from formrunner.sources.records import SUPPORTED_SUFFIXES, load_records, results_to_csv, results_to_xlsx

logger = get_logger(__name__)

# How long a progress stream blocks waiting for the next event before re-checking
_STREAM_POLL_SECONDS = 1.0

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class BadRequestError(FormRunnerError):
    """Request body or parameters are malformed."""


def _error_response(status_code: int, error: Exception) -> JSONResponse:
    return JSONResponse({"error": type(error).__name__, "detail": str(error)}, status_code=status_code)


async def _handle_bad_request(request: Request, exc: Exception) -> Response:
    return _error_response(400, exc)


async def _handle_not_found(request: Request, exc: Exception) -> Response:
    return _error_response(404, exc)


async def _handle_conflict(request: Request, exc: Exception) -> Response:
    return _error_response(409, exc)


async def _handle_initialization(request: Request, exc: Exception) -> Response:
    return _error_response(502, exc)


async def _handle_persistence(request: Request, exc: Exception) -> Response:
    logger.error("request_failed_on_persistence", path=request.url.path, error=str(exc))
    return _error_response(503, exc)


async def _handle_not_confirmed(request: Request, exc: Exception) -> Response:
    # Accepted: the run will still pause or halt at the next item boundary
    assert isinstance(exc, CommandNotConfirmedError)
    return JSONResponse(
        {"error": type(exc).__name__, "detail": str(exc), "confirmed": False, "status": exc.snapshot.to_dict()},
        status_code=202,
    )


async def _json_object(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object; an empty body is {}."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise BadRequestError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


def _records_from_upload(filename: str, data: bytes) -> list[dict[str, Any]]:
    """Parse an uploaded records file with the same loader the CLI uses."""
    with tempfile.TemporaryDirectory(prefix="formrunner-upload-") as tmp:
        path = Path(tmp) / filename
        path.write_bytes(data)
        return load_records(path)


class ControlServer:
    """HTTP and WebSocket adapter over a ControlService."""

    def __init__(self, control: ControlService) -> None:
        self._control = control
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        """Create the Starlette application with all routes."""
        routes = [
            Route("/health", self._health_endpoint, methods=["GET"]),
            Route("/api/status", self._status_endpoint, methods=["GET"]),
            # Run control
            Route("/api/runs", self._start_endpoint, methods=["POST"]),
            Route("/api/runs/upload", self._upload_endpoint, methods=["POST"]),
            Route("/api/runs/pause", self._pause_endpoint, methods=["POST"]),
            Route("/api/runs/resume", self._resume_endpoint, methods=["POST"]),
            Route("/api/runs/stop", self._stop_endpoint, methods=["POST"]),
            Route("/api/runs/abort", self._abort_endpoint, methods=["POST"]),
            # Session history
            Route("/api/sessions", self._sessions_endpoint, methods=["GET"]),
            Route("/api/sessions/{session_id:int}", self._session_detail_endpoint, methods=["GET"]),
            Route("/api/sessions/{session_id:int}/export", self._session_export_endpoint, methods=["GET"]),
            Route("/api/sessions/{session_id:int}/resume", self._session_resume_endpoint, methods=["POST"]),
            WebSocketRoute("/ws/progress", self._progress_socket),
        ]
        # Resolved along the exception MRO, so SessionNotFoundError wins over ControlConflictError
        exception_handlers = {
            BadRequestError: _handle_bad_request,
            RecordsFileError: _handle_bad_request,
            SessionNotFoundError: _handle_not_found,
            ControlConflictError: _handle_conflict,
            InitializationError: _handle_initialization,
            PersistenceError: _handle_persistence,
            CommandNotConfirmedError: _handle_not_confirmed,
        }
        return Starlette(
            debug=False,
            routes=routes,
            exception_handlers=exception_handlers,
            lifespan=self._lifespan,
        )

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        yield
        # Graceful shutdown: stop the active run, then wake every progress stream
        await run_in_threadpool(self._control.shutdown)
        self._control.publisher.close()

    @property
    def app(self) -> Starlette:
        """Get the Starlette ASGI application."""
        return self._app

    # === Status ===

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /health."""
        return JSONResponse(
            {
                "status": "healthy",
                "active": self._control.is_active,
                "progress": self._control.publisher.health_metrics(),
            }
        )

    async def _status_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/status."""
        return JSONResponse(
            {
                "status": self._control.status().to_dict(),
                "logs": [entry.to_dict() for entry in self._control.recent_logs()],
            }
        )

    # === Run control ===

    async def _start_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs with {"label": str, "records": [object, ...]}."""
        body = await _json_object(request)
        records = body.get("records")
        if not isinstance(records, list) or not all(isinstance(record, dict) for record in records):
            raise BadRequestError("'records' must be an array of objects")
        label = body.get("label", "api")
        if not isinstance(label, str) or not label.strip():
            raise BadRequestError("'label' must be a non-empty string")
        session = await run_in_threadpool(self._control.start, records, label)
        return JSONResponse({"session": session.to_dict()}, status_code=201)

    async def _upload_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs/upload, multipart with a ``file`` part and optional ``label``."""
        async with request.form() as form:
            upload = form.get("file")
            if not isinstance(upload, UploadFile) or not upload.filename:
                raise BadRequestError("Multipart field 'file' with a filename is required")
            filename = Path(upload.filename).name
            if Path(filename).suffix.lower() not in SUPPORTED_SUFFIXES:
                supported = ", ".join(sorted(SUPPORTED_SUFFIXES))
                raise BadRequestError(f"Unsupported records file {filename!r}; expected one of {supported}")
            label = form.get("label") or filename
            if not isinstance(label, str) or not label.strip():
                raise BadRequestError("'label' must be a non-empty string")
            data = await upload.read()

        records = await run_in_threadpool(_records_from_upload, filename, data)
        session = await run_in_threadpool(self._control.start, records, label)
        return JSONResponse({"session": session.to_dict()}, status_code=201)

    async def _pause_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs/pause."""
        snapshot = await run_in_threadpool(self._control.pause)
        return JSONResponse({"status": snapshot.to_dict()})

    async def _resume_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs/resume."""
        snapshot = await run_in_threadpool(self._control.resume)
        return JSONResponse({"status": snapshot.to_dict()})

    async def _stop_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs/stop."""
        snapshot = await run_in_threadpool(self._control.stop)
        return JSONResponse({"status": snapshot.to_dict()})

    async def _abort_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/runs/abort with {"reason": str}."""
        body = await _json_object(request)
        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise BadRequestError("'reason' must be a non-empty string")
        snapshot = await run_in_threadpool(self._control.abort, reason)
        return JSONResponse({"status": snapshot.to_dict()})

    # === Sessions ===

    async def _sessions_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/sessions?limit=N."""
        raw_limit = request.query_params.get("limit", "50")
        try:
            limit = int(raw_limit)
        except ValueError:
            raise BadRequestError(f"'limit' must be an integer, got {raw_limit!r}") from None
        if limit <= 0:
            raise BadRequestError("'limit' must be > 0")
        sessions = await run_in_threadpool(self._control.history, limit)
        return JSONResponse({"sessions": [session.to_dict() for session in sessions]})

    async def _session_detail_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/sessions/{session_id}."""
        session_id: int = request.path_params["session_id"]
        detail = await run_in_threadpool(self._control.session_detail, session_id)
        return JSONResponse(detail.to_dict())

    async def _session_export_endpoint(self, request: Request) -> Response:
        """Handle GET /api/sessions/{session_id}/export?format=csv|xlsx."""
        session_id: int = request.path_params["session_id"]
        export_format = request.query_params.get("format", "csv")
        if export_format not in ("csv", "xlsx"):
            raise BadRequestError(f"'format' must be csv or xlsx, got {export_format!r}")
        detail = await run_in_threadpool(self._control.session_detail, session_id)
        if export_format == "xlsx":
            content = await run_in_threadpool(results_to_xlsx, detail.items)
            return Response(
                content,
                media_type=XLSX_MEDIA_TYPE,
                headers={"Content-Disposition": f'attachment; filename="session-{session_id}.xlsx"'},
            )
        return PlainTextResponse(
            results_to_csv(detail.items),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="session-{session_id}.csv"'},
        )

    async def _session_resume_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/sessions/{session_id}/resume with optional {"force": bool}."""
        session_id: int = request.path_params["session_id"]
        body = await _json_object(request)
        force = body.get("force", False)
        if not isinstance(force, bool):
            raise BadRequestError("'force' must be a boolean")
        session = await run_in_threadpool(lambda: self._control.resume_session(session_id, force=force))
        return JSONResponse({"session": session.to_dict()}, status_code=202)

    # === Progress stream ===

    async def _progress_socket(self, websocket: WebSocket) -> None:
        """Stream the latest status, recent logs, then live events."""
        await websocket.accept()
        subscription = self._control.publisher.subscribe(replay=True)
        sender = asyncio.create_task(self._pump_events(websocket, subscription))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            subscription.close()
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await sender

    @staticmethod
    async def _pump_events(websocket: WebSocket, subscription: Subscription) -> None:
        while True:
            event = await run_in_threadpool(subscription.get, _STREAM_POLL_SECONDS)
            if event is None:
                if subscription.closed:
                    return
                continue
            await websocket.send_json(event.to_dict())


def create_app(control: ControlService) -> Starlette:
    """Build the ASGI application for a control service."""
    return ControlServer(control).app
