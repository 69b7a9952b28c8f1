from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import IO, Any

_FIELD = re.compile(r"(\w+)=(\S+)")

# Libraries that log per-file chatter at DEBUG/INFO.
_NOISY_LOGGERS = ("PIL", "libav")


def message_fields(message: str) -> dict[str, str]:
    """`key=value` tokens of a log message, first occurrence wins."""
    fields: dict[str, str] = {}
    for key, value in _FIELD.findall(message):
        fields.setdefault(key, value)
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the message's key=value pairs lifted into `fields`."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": message,
        }
        fields = message_fields(message)
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload.update(context)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(
    level: str = "INFO", json_logs: bool = False, stream: IO[str] | None = None
) -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    # stdout carries the final report, logs go to stderr.
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(threadName)s %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    if root.level <= logging.INFO:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
