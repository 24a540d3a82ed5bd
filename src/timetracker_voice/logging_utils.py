"""structlog setup and the JSON-lines session trace."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

# Third-party loggers that log every frame at DEBUG/INFO.
CHATTY_LOGGERS = ("websockets", "httpx", "httpcore")


def configure_logging(level: str | int = "INFO") -> None:
    """Route structlog through stdlib logging as one JSON object per line.

    Context bound with ``structlog.contextvars`` (the realtime client binds
    ``realtime_model`` and ``connection`` while a socket is open) is merged
    into every event, so tool and audio logs can be tied to a connection.
    """
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format="%(message)s")
    numeric = logging.getLevelName(level) if isinstance(level, str) else level
    if not isinstance(numeric, int):
        numeric = logging.INFO
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, numeric))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def get_trace_logger(trace_path: str | Path | None) -> logging.Logger:
    """Logger appending session milestones to ``trace_path`` as JSON lines.

    Without a path the logger has no handler and does not propagate, so
    traces are simply dropped.
    """
    logger = logging.getLogger("timetracker_voice.trace")
    logger.propagate = False
    if trace_path:
        path = Path(os.path.expandvars(str(trace_path))).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve()
            for h in logger.handlers
        ):
            handler = logging.FileHandler(path, encoding="utf-8")
            handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def emit_trace(trace_logger: logging.Logger | None, **payload: Any) -> None:
    if trace_logger is None:
        return
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    context = structlog.contextvars.get_contextvars()
    if "connection" in context:
        payload.setdefault("connection", context["connection"])
    trace_logger.info(json.dumps(payload, default=str))
