"""Frontend log ingestion.

The UI ships its log entries to ``POST /api/logs``, one at a time or in
batches. Each entry is re-emitted on the ``moach.frontend`` logger at the
matching level so browser and server logs end up in the same place.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

frontend_logger = logging.getLogger("moach.frontend")

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


class InvalidLogFormat(ValueError):
    """The request body is neither a log entry nor a batch of them."""


class FrontendLogEntry(BaseModel):
    level: str
    message: str = Field(min_length=1)
    context: dict[str, Any] | None = None
    timestamp: str | None = None
    source: str | None = None
    service: str | None = None


def log_entry(entry: FrontendLogEntry) -> None:
    """Re-emit one frontend entry. Unknown levels are logged at INFO."""
    level = _LEVELS.get(entry.level.lower(), logging.INFO)
    frontend_logger.log(
        level,
        "[FRONTEND] %s",
        entry.message,
        extra={
            "frontend_context": entry.context or {},
            "frontend_source": entry.source,
            "frontend_service": entry.service,
            "original_timestamp": entry.timestamp,
        },
    )


def ingest(body: Any) -> int | None:
    """Log a single entry or a ``{"logs": [...]}`` batch.

    Returns the number of entries processed for a batch, ``None`` for a
    single entry.

    Raises:
        InvalidLogFormat: the body matches neither shape.
    """
    if not isinstance(body, dict):
        raise InvalidLogFormat("Invalid log format")

    try:
        if body.get("level") and body.get("message"):
            log_entry(FrontendLogEntry.model_validate(body))
            return None

        logs = body.get("logs")
        if isinstance(logs, list):
            entries = [FrontendLogEntry.model_validate(item) for item in logs]
            for entry in entries:
                log_entry(entry)
            return len(entries)
    except ValidationError as exc:
        raise InvalidLogFormat("Invalid log format") from exc

    raise InvalidLogFormat("Invalid log format")
