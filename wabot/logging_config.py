"""JSON logging for wabot.

Every record is one JSON line. Structured fields go in ``extra={"context": {...}}``;
fields bound with :func:`bound_context` (message id, business id) are merged
into every record emitted while the block runs, including from handlers.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

_bound: ContextVar[dict[str, Any]] = ContextVar("wabot_log_context", default={})


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {**_bound.get(), **(getattr(record, "context", None) or {})}
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in root.handlers[:]:
        root.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter())
    root.addHandler(stream)

    # Per-request noise from the HTTP clients and the server
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"wabot.{name}")


@contextmanager
def bound_context(**fields: Any) -> Iterator[None]:
    token = _bound.set({**_bound.get(), **fields})
    try:
        yield
    finally:
        _bound.reset(token)


def log_timing(logger: logging.Logger, stage: str, elapsed_ms: float, context: dict | None = None) -> None:
    payload: dict[str, Any] = dict(context or {})
    payload["stage"] = stage
    payload["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": payload})
