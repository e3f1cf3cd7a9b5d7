"""Logging for the copilot core.

Two sinks are installed on the root logger: a terse console stream and a
rotating JSON-lines file. Every record carries the correlation id of the unit
of work that produced it, which is the ``x-request-id`` of an admin call or
the name of the drop file being ingested. Prompt and response text passed as
``extra`` fields is shortened before it is written.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

_LOG_CONFIGURED = False
_CORRELATION_ID_CTX: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "devark_correlation_id", default=None
)

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_LOG_FILE = "logs/devark.jsonl"
PREVIEW_LIMIT = 100

# Free-text fields that may hold user prompts or model output.
TEXT_FIELDS = frozenset({"prompt", "response", "system_prompt", "stderr"})

# Attributes every LogRecord has before extras are merged in.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation_id", "component"}


def preview(text: str | None, limit: int = PREVIEW_LIMIT) -> str:
    """Shorten free text (prompts, responses) before it reaches a log line."""
    if not text:
        return ""
    return text if len(text) <= limit else f"{text[:limit]}..."


def _component(logger_name: str) -> str:
    # devark.hooks.pipeline -> hooks
    parts = logger_name.split(".")
    if len(parts) > 1 and parts[0] == "devark":
        return parts[1]
    return parts[0] or "root"


class CorrelationFilter(logging.Filter):
    """Stamp records with the active correlation id and the emitting component."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID_CTX.get()
        record.component = _component(record.name)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "component": getattr(record, "component", None) or _component(record.name),
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            payload["correlation_id"] = correlation_id

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            if key in TEXT_FIELDS and isinstance(value, str):
                value = preview(value)
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=str)


def set_correlation_id(correlation_id: str | None) -> contextvars.Token[str | None]:
    return _CORRELATION_ID_CTX.set(correlation_id)


def reset_correlation_id(token: contextvars.Token[str | None]) -> None:
    _CORRELATION_ID_CTX.reset(token)


def get_correlation_id() -> str | None:
    return _CORRELATION_ID_CTX.get()


def log_file_path(configured: str | None = None) -> pathlib.Path:
    """Where the JSON log goes: ``DEVARK_LOG_FILE``, relative paths anchored at the project root."""
    path = pathlib.Path(configured or os.getenv("DEVARK_LOG_FILE", DEFAULT_LOG_FILE)).expanduser()
    if not path.is_absolute():
        path = BASE_DIR / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Install the console and JSON file handlers once per process."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    level_name = (level or os.getenv("DEVARK_LOG_LEVEL", "WARNING")).upper()
    console_level = logging.getLevelName(level_name)
    if not isinstance(console_level, int):
        console_level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    correlation_filter = CorrelationFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.addFilter(correlation_filter)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(component)s: %(message)s [%(correlation_id)s]")
    )
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(log_file_path(log_file), maxBytes=10_000_000, backupCount=5)
    file_handler.setLevel(logging.INFO)
    file_handler.addFilter(correlation_filter)
    file_handler.setFormatter(JsonFormatter())
    root_logger.addHandler(file_handler)

    # The drop-box watcher and the HTTP client are chatty at INFO.
    for noisy in ("uvicorn", "httpx", "watchdog"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _LOG_CONFIGURED = True


__all__ = [
    "CorrelationFilter",
    "JsonFormatter",
    "configure_logging",
    "get_correlation_id",
    "log_file_path",
    "preview",
    "reset_correlation_id",
    "set_correlation_id",
]
