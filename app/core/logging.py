"""
Structured JSON logging configuration.

One JSON object per line on stdout. Build worker threads log with
extra={"build_id": ..., "stage": ...}; request handlers get the request id
attached automatically.

NEVER logs: API keys, admin key, proof events, archive contents.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.core.request_logging import get_request_id

# Extra attributes copied from the record into the JSON line when present
EXTRA_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "caller",
    "build_id",
    "stage",
)

# Third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,  # RequestLoggingMiddleware covers this
    "uvicorn.error": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "multipart": logging.WARNING,
}


class RequestIdFilter(logging.Filter):
    """Attach the current request id to records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Replace root handlers with a single JSON stdout handler."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIdFilter())

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
