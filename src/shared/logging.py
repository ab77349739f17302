import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

_CONTEXT_KEYS = (
    "tool",
    "platform",
    "path",
    "description",
    "page",
    "start",
    "next_page_start",
    "fetched_pages",
    "total_fetched",
    "max_items",
    "status_code",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)

        return json.dumps(payload, default=str)


_LOGGING_CONFIGURED = False


def configure_logging() -> None:
    """Install JSON handlers on the root logger once per process.

    Output goes to stderr because stdout is the MCP stdio channel. ``LOG_FILE``
    adds a file handler alongside it.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    root = logging.getLogger()
    root.handlers = []

    formatter = JsonFormatter()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    log_file = os.getenv("LOG_FILE", "").strip()
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    _LOGGING_CONFIGURED = True


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        merged = dict(self.extra)
        merged.update(extra)
        kwargs["extra"] = merged
        return msg, kwargs


def get_logger(name: str, **context: Any) -> ContextAdapter:
    configure_logging()
    return ContextAdapter(logging.getLogger(name), context)
