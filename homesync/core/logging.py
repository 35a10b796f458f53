"""Logging setup for the index synchronization service.

Log records carry two kinds of context besides the usual logger name and level:

- ``request_id``: set by whoever drives a mutation (an admin request, a CLI
  run) via ``set_request_id``
- mutation fields: ``organization_id`` and ``mutation`` are bound with
  ``log_context`` by the mutation services and the synchronization engine, so
  every line logged while a mutation converges can be grouped afterwards

Plain-text output appends the bound fields after the message; JSON output
(``LOG_JSON=true``) emits them as top-level keys.

Usage:
    from homesync.core.logging import get_logger, log_context

    logger = get_logger(__name__)

    with log_context(organization_id="org-1", mutation="homes_bulk_disabled"):
        logger.info("Disabled 3 homes")
"""

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from homesync.core.config import get_settings

# Fields a ContextFilter copies from the bound context onto each record
CONTEXT_FIELDS = ("organization_id", "mutation")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s%(context_suffix)s"

_PATH_PATTERN = re.compile(r"(/[^\s:]+)+")
_CREDENTIAL_PATTERNS = [
    re.compile(r"(password|secret|token|api[_-]?key|auth)[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"Bearer\s+\S+", re.IGNORECASE),
    # Credentials embedded in Redis / database URLs
    re.compile(r"(redis|rediss|postgresql(\+asyncpg)?)://[^@\s]+@", re.IGNORECASE),
]

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_bound_context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return _request_id.get()


def set_request_id(request_id: str | None) -> None:
    """Set the request ID in context."""
    _request_id.set(request_id)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the fields currently bound with ``log_context``."""
    return dict(_bound_context.get() or {})


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Bind fields to every record logged inside the block.

    Nested blocks add to (and may override) the enclosing fields. Tasks
    created inside the block inherit the binding.

    Yields:
        The merged context in effect inside the block
    """
    merged = {**get_log_context(), **{k: v for k, v in fields.items() if v is not None}}
    token = _bound_context.set(merged)
    try:
        yield merged
    finally:
        _bound_context.reset(token)


class ContextFilter(logging.Filter):
    """Copy request_id and the bound mutation fields onto each record.

    Fields passed explicitly through ``extra=`` take precedence over the
    bound context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()  # type: ignore[attr-defined]

        bound = _bound_context.get() or {}
        for key in CONTEXT_FIELDS:
            if key in bound and getattr(record, key, None) is None:
                setattr(record, key, bound[key])

        pairs = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        suffix = f" [{' '.join(pairs)}]" if pairs else ""
        record.context_suffix = suffix  # type: ignore[attr-defined]
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter with an ISO timestamp, level and component name."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["component"] = record.name
        # Text-only rendering helper
        log_record.pop("context_suffix", None)

        if not getattr(record, "request_id", None):
            log_record.pop("request_id", None)


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return CustomJsonFormatter("%(message)s")
    return logging.Formatter(TEXT_FORMAT)


def setup_logging() -> None:
    """Configure the root logger with a console and a rotating file handler.

    Both handlers share one ContextFilter and one output format, plain text
    unless ``log_json`` is enabled. A log file that cannot be opened is
    reported and skipped; console logging still works.
    """
    settings = get_settings()
    log_level = getattr(logging, settings.log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    context_filter = ContextFilter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    try:
        log_path = Path(settings.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=str(log_path),
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
        )
    except OSError as e:
        root_logger.warning(f"Could not set up file logging: {e}")

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(_build_formatter(settings.log_json))
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    # SQL echo and driver chatter drown out convergence logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging configured: level={settings.log_level}, "
        f"file={settings.log_file_path}, json={settings.log_json}"
    )


def sanitize_error(error: Exception, max_length: int = 500) -> str:
    """Render an exception for logs and convergence reports.

    Credentials (including those embedded in connection URLs) are redacted,
    file paths are shortened to their final component and the result is
    truncated to ``max_length`` characters.

    Args:
        error: The exception to render
        max_length: Maximum length before truncation

    Returns:
        Sanitized error message
    """
    msg = str(error)

    for pattern in _CREDENTIAL_PATTERNS:
        msg = pattern.sub("[REDACTED]", msg)

    def _simplify_path(match: re.Match[str]) -> str:
        head, sep, tail = match.group(0).rpartition("/")
        return f".../{tail}" if sep and head else match.group(0)

    msg = _PATH_PATTERN.sub(_simplify_path, msg)

    if len(msg) > max_length:
        msg = msg[:max_length] + "...[truncated]"

    return msg


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name, typically ``__name__``."""
    return logging.getLogger(name)
