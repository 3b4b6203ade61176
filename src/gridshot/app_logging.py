from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

LOGGER_NAME = "gridshot"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update(extra_fields)
        return json.dumps(payload, sort_keys=True, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human readable stderr lines; a `position` field becomes a `[#n]` tag."""

    def format(self, record: logging.LogRecord) -> str:
        extra_fields = getattr(record, "extra_fields", None)
        fields = dict(extra_fields) if isinstance(extra_fields, dict) else {}
        position = fields.pop("position", None)

        parts = [self.formatTime(record), record.levelname]
        if position is not None:
            parts.append(f"[#{position}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={_quote(value)}" for key, value in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _quote(value: object) -> str:
    text = str(value)
    if not text or any(char.isspace() for char in text) or '"' in text:
        return json.dumps(text)
    return text


def setup_logger(log_path: Path | None = None, *, debug: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    # StreamHandler defaults to stderr; stdout is reserved for the report.
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(KeyValueFormatter())
    logger.addHandler(stream_handler)
    return logger


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields: object) -> None:
    logger.log(level, message, extra={"extra_fields": fields})
