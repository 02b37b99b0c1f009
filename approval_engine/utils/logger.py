"""
Structured JSON Logging

Every record is one JSON object. The correlation ID of the request (or SLA
job) being served is attached automatically, and approval identifiers passed
through ``extra`` are lifted to top-level keys so log lines can be joined
with the event log.
"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from ..config.settings import Settings, get_settings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

EXTRA_FIELDS = (
    "tenant_id",
    "instance_id",
    "stage_id",
    "task_id",
    "template_id",
    "user_id",
    "action",
    "status",
    "event_type",
    "job_id",
    "error_code",
)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "pymongo": logging.WARNING,
    "apscheduler": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """Renders a record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id

        payload.update({
            field: getattr(record, field)
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        })

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _rotating_handler(path: str, level: int = logging.NOTSET) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(level)
    return handler


def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Route all logging through the JSON formatter

    Writes to stdout, ``<logs_path>/app.log`` and ``<logs_path>/error.log``
    (errors only). Safe to call more than once; handlers are replaced.
    """
    config = config or get_settings()
    os.makedirs(config.logs_path, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()

    formatter = JsonFormatter()
    handlers = [
        logging.StreamHandler(sys.stdout),
        _rotating_handler(os.path.join(config.logs_path, "app.log")),
        _rotating_handler(os.path.join(config.logs_path, "error.log"), logging.ERROR),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Bind the correlation ID for the current request or job"""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
