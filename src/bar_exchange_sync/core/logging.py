"""Process-wide logging setup for the CLI and long-running watchers."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from rich.logging import RichHandler

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)


def record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = record_extra(record)
        if extra:
            payload["data"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, sort_keys=True)


class ConsoleExtraFormatter(logging.Formatter):
    """Append ``extra`` context as ``key=value`` pairs after the message."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extra = record_extra(record)
        if not extra:
            return message
        context = " ".join(f"{key}={value}" for key, value in sorted(extra.items()))
        return f"{message} [{context}]"


def configure_logging(level: str = "INFO", *, json_logs: bool = False) -> None:
    handler: logging.Handler
    if json_logs:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLineFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        handler.setFormatter(ConsoleExtraFormatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(root.level, logging.INFO))
