# core/logging_config.py
"""
Structured JSON logging for the proxy.

One JSON object per line on stderr. Every line carries the request id of
the HTTP request being served (see core.request_context), and anything
passed through `extra=` is copied in as a top-level field.
"""

import json
import logging
from datetime import datetime, UTC

from core.request_context import get_request_id

# Attributes every LogRecord has; only the remaining ones came from `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Loggers that may echo request URLs, and with them query-string API keys
_QUIET_LOGGERS = ("httpx", "httpcore", "google_genai")


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JsonFormatter(logging.Formatter):
    """Render a record as JSON: fixed envelope first, then extra fields."""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }
        for key, value in _extra_fields(record).items():
            entry.setdefault(key, value)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # Extras may hold non-JSON values (enums, exceptions); fall back to str
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO"):
    """Install the JSON handler on the root logger, replacing any others."""
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)
