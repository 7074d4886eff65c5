"""
Logging configuration for the API and the Celery worker.

Services attach structured context through ``extra={"extra_fields": {...}}``.
The JSON formatter merges those fields into the record; the text formatter
appends them as ``key=value`` pairs so local output stays greppable.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from core.config import settings

# Libraries that log every query or HTTP hop at INFO.
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "requests": logging.WARNING,
    "alembic.runtime.migration": logging.WARNING,
    "celery": logging.INFO,
}


def engagement_context(
    client_id: Optional[str] = None,
    recommendation_id: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Dict[str, Any]]:
    """Build the ``extra`` mapping for a log call about a client or recommendation."""
    context: Dict[str, Any] = {}
    if client_id is not None:
        context["client_id"] = client_id
    if recommendation_id is not None:
        context["recommendation_id"] = recommendation_id
    context.update({k: v for k, v in fields.items() if v is not None})
    return {"extra_fields": context}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, extra fields flattened into it."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = getattr(record, "extra_fields", None)
        if isinstance(extra, Mapping):
            # Reserved keys win over caller-provided ones.
            log_data.update({k: v for k, v in extra.items() if k not in log_data})

        return json.dumps(log_data, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain text with extra fields rendered as trailing ``key=value`` pairs."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = getattr(record, "extra_fields", None)
        if not isinstance(extra, Mapping) or not extra:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(extra.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} | {pairs}{sep}{tail}"


def build_formatter() -> logging.Formatter:
    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        return JSONFormatter()
    return KeyValueFormatter()


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger once per process.

    Safe to call from both the API and the worker: existing handlers are
    replaced, not stacked.
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(build_formatter())
    root_logger.addHandler(console_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger
