"""Single-line JSON log formatter.

Activate with ``CREDIT_API_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-10-05T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "credit_api.access",
        "message": "POST /api/v1/credits/holds -> 201",
        "correlation_id": "9f2c...",  // from RequestLoggingMiddleware
        "request": { ... },
        "exc_info": "Traceback ..."  // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    """One JSON object per record; the access-log ``request`` extra is nested."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "request", None)
        if isinstance(context, dict):
            entry["correlation_id"] = context.get("correlation_id")
            entry["request"] = context

        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Route all logging through a single stderr handler emitting JSON."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
