"""Loguru setup: one JSON line per record on stdout, stdlib loggers bridged in."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# Third-party loggers whose INFO chatter drowns out sync logs.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "sqlalchemy.engine")


class _StdlibBridge(logging.Handler):
    """Forward uvicorn, SQLAlchemy and httpx records to Loguru under their logger name."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.bind(category=record.name).opt(depth=6, exception=record.exc_info).log(
            level, "{}", record.getMessage()
        )


def _json_sink(service: Dict[str, str]):
    def sink(message) -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "category": "app",
            **service,
            **record["extra"],
        }
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = f"{span_context.trace_id:032x}"
            payload["span_id"] = f"{span_context.span_id:016x}"
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)
        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return sink


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    logger.remove()
    logger.add(
        _json_sink({"service": service_name, "environment": environment, "version": version}),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[_StdlibBridge()], level=logging.INFO, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def sync_logger(operation: str):
    """Logger bound to the accounting sync category for one operation slug."""

    return logger.bind(category="xero_sync", operation=operation)


__all__ = ["configure_logging", "sync_logger"]
