"""
voicepipe.observability.logger — Structured JSON logging setup.

Records may carry `stream_id` (one voice request) or `session_id` (one
capture session) via `extra=`; both are copied into the JSON line.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from voicepipe.utils.config import ObservabilityConfig

_CORRELATION_FIELDS = ("stream_id", "session_id")

# Chatty at DEBUG and irrelevant to the voice loop
_NOISY_LOGGERS = ("aiohttp.access", "asyncio")


class JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        for name in _CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(config: ObservabilityConfig, debug: bool = False):
    """Route all records to a JSONL file and a short console format."""
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    jsonl = logging.FileHandler(str(log_dir / config.log_file), encoding="utf-8")
    jsonl.setFormatter(JSONFormatter())
    jsonl.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setFormatter(
        logging.Formatter(
            "%(asctime)s │ %(levelname)-7s │ %(name)-30s │ %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    console.setLevel(logging.DEBUG if debug else logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.addHandler(jsonl)
    root.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
