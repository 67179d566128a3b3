from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from concierge.common.logging import sanitize_text, sanitize_value

# Attributes every LogRecord carries; anything else came from log_event fields.
RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the service identity stamped on every record."""

    def __init__(self, service_id: str | None = None) -> None:
        super().__init__()
        self._service_id = service_id

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
        }
        if self._service_id:
            payload["service_id"] = self._service_id

        for key, value in vars(record).items():
            if key in RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            payload[key] = sanitize_value(value, field=key)

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(name: str = "concierge") -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").strip().upper())
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service_id=os.getenv("SERVICE_ID") or None))

    # aiohttp access lines go through the same JSON handler.
    for logger_name in (name, "aiohttp.access"):
        target = logging.getLogger(logger_name)
        target.handlers.clear()
        target.addHandler(handler)
        target.propagate = False
    logger = logging.getLogger(name)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    return logger
