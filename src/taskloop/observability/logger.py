"""
observability/logger.py — taskloop Structured Logger

structlog routed through stdlib logging so host applications keep control
of handlers. Every line carries timestamp, level, logger name and event;
session_id / request_id ride along via contextvars once a run binds them.

Sinks:
  - rotating JSON file   (LoggingSettings.log_dir, off when unset)
  - stderr console       (JSON or coloured dev rendering)

Model responses and tool output end up in log fields, so string values
are clipped to MAX_FIELD_CHARS before rendering.

Usage:
    from taskloop.observability.logger import get_logger, setup_logging

    setup_logging(level="DEBUG", json_format=False)   # once, at startup
    log = get_logger(__name__)
    log.info("session_store.created", session_id="sess_abc", phase="planning")

    with session_context("sess_abc", "req_1"):
        log.info("runner.start")     # session_id / request_id attached
"""

from __future__ import annotations

import contextlib
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

from taskloop.config.settings import LoggingSettings

LOG_FILE_NAME = "taskloop.log"
MAX_FIELD_CHARS = 2000

_SKIP_CLIP = {"event", "timestamp", "level", "logger", "exception"}


# ─────────────────────────────────────────────────────────────────────────────
# Processors
# ─────────────────────────────────────────────────────────────────────────────

def clip_long_values(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Truncate oversized string fields; raw model text can run to megabytes."""
    for key, value in event_dict.items():
        if key in _SKIP_CLIP or not isinstance(value, str):
            continue
        if len(value) > MAX_FIELD_CHARS:
            event_dict[key] = f"{value[:MAX_FIELD_CHARS]}… [{len(value) - MAX_FIELD_CHARS} more chars]"
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        clip_long_values,
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────

def _build_handlers(cfg: LoggingSettings, numeric_level: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if cfg.log_dir:
        directory = Path(cfg.log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            filename=directory / LOG_FILE_NAME,
            maxBytes=cfg.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        ))

    if cfg.console_output:
        handlers.append(logging.StreamHandler(sys.stderr))

    # Library default: stay silent unless the host asked for output.
    if not handlers:
        handlers.append(logging.NullHandler())

    for handler in handlers:
        handler.setLevel(numeric_level)
    return handlers


def _renderer(cfg: LoggingSettings) -> Any:
    if cfg.json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────

def configure_logging(cfg: LoggingSettings) -> None:
    """Install structlog + stdlib handlers from a LoggingSettings block."""
    numeric_level = getattr(logging, cfg.level, logging.INFO)
    handlers = _build_handlers(cfg, numeric_level)
    pre_chain = _pre_chain()

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(cfg),
        ],
        foreign_pre_chain=pre_chain,
    )
    for handler in handlers:
        handler.setFormatter(formatter)


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str | Path] = None,
    json_format: bool = True,
    console_output: bool = True,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
) -> None:
    """Keyword-argument form of configure_logging(); values are validated."""
    configure_logging(LoggingSettings(
        level=level,
        log_dir=str(log_dir) if log_dir is not None else None,
        json_format=json_format,
        console_output=console_output,
        max_file_size_mb=max_file_size_mb,
        backup_count=backup_count,
    ))


def setup_logging_from_settings(settings) -> None:
    """Configure logging from a loaded Settings instance."""
    configure_logging(settings.logging)


def get_logger(name: str = "taskloop", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Bound logger for a module, optionally with permanent context.

        log = get_logger(__name__, component="retry")
        log.info("retry.succeeded", operation_id="op_1a2b", attempt=2)
    """
    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


# ── Session context ──────────────────────────────────────────────────────────

def bind_session(session_id: str, request_id: Optional[str] = None) -> None:
    """Attach session_id (and request_id) to every log line in this async context."""
    values: dict[str, Any] = {"session_id": session_id}
    if request_id:
        values["request_id"] = request_id
    structlog.contextvars.bind_contextvars(**values)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()


@contextlib.contextmanager
def session_context(session_id: str, request_id: Optional[str] = None) -> Iterator[None]:
    """Scoped bind_session(); restores the previous context on exit."""
    values: dict[str, Any] = {"session_id": session_id}
    if request_id:
        values["request_id"] = request_id
    with structlog.contextvars.bound_contextvars(**values):
        yield
