# src/formrunner/core/logging.py
"""Diagnostic logging for formrunner processes.

Both structlog loggers and plain stdlib loggers (uvicorn, httpx,
SQLAlchemy) end up on one stderr handler with a single renderer, so a
`formrunner serve --json-logs` process writes one JSON object per line no
matter which library logged it.

These are diagnostics for whoever operates the process. The per-record
progress lines an operator watches are ProgressPublisher events, not log
records.
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# Held at WARNING or above regardless of --verbose
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "uvicorn.access",
    "websockets",
)

_PRE_CHAIN: tuple[Any, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.StackInfoRenderer(),
)


def _drop_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Strip the ``_record``/``_from_structlog`` keys ProcessorFormatter injects."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _render_chain(json_output: bool, stream: TextIO) -> list[Any]:
    if json_output:
        return [_drop_formatter_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=stream.isatty())]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Install the process-wide log handler. Safe to call again.

    Args:
        json_output: One JSON object per line instead of console text.
        level: Root level name (DEBUG, INFO, WARNING, ERROR).
        stream: Where records go; stderr unless given, keeping stdout for
            command output.
    """
    log_level = getattr(logging, level.upper())
    target = stream if stream is not None else sys.stderr

    structlog.configure(
        processors=[*_PRE_CHAIN, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between cases
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(target)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output, target), foreign_pre_chain=list(_PRE_CHAIN)))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    quiet_level = max(log_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Module logger, e.g. ``get_logger(__name__)``."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
