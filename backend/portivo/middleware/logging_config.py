"""
Logging setup for the API process and the notification worker.

``log_format="json"`` writes one object per line. Every line carries the
request id and user id from the current request context (empty outside a
request, e.g. in the worker); structured ``extra`` fields listed in
``CONTEXT_FIELDS`` are copied through when a call site supplies them.
"""

import json
import logging
from datetime import datetime, timezone

from portivo.middleware.request_context import get_request_id, get_user_id

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

CONTEXT_FIELDS = (
    "duration_ms",
    "status_code",
    "path",
    "workspace_id",
    "action",
    "kind",
    "notification_id",
)

# Chatty third-party loggers kept at WARNING unless debugging.
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "s3transfer", "aiosqlite")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id() or None,
            "user_id": getattr(record, "user_id", None) or get_user_id(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
