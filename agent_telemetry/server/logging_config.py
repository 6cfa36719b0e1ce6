"""
Logging setup for the receiver.

Console logging via dictConfig, with a request id attached to every record
emitted while a request is being served.
"""

import logging
import logging.config
import time
import uuid
from typing import Any, Dict

from fastapi import FastAPI, Request


class RequestIdFilter(logging.Filter):
    """Attach request_id to log records if present in record.extra, else '-'."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if not hasattr(record, "request_id"):
            record.request_id = "-"  # type: ignore[attr-defined]
        return True


class SimpleConsoleFormatter(logging.Formatter):
    """Minimal, readable console format for terminal use."""

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        record.message = record.getMessage()
        asctime = self.formatTime(record, self.datefmt)
        rid = getattr(record, "request_id", "-")
        line = f"{asctime} | {record.levelname} | {record.name} | {record.message} | rid={rid}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO") -> None:
    """Configure application-wide console logging at the given level."""
    level = level.upper()
    dict_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {"()": RequestIdFilter},
        },
        "formatters": {
            "simple": {"()": SimpleConsoleFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "simple",
                "filters": ["request_id"],
            },
        },
        "loggers": {
            "": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn.access": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
    }
    logging.config.dictConfig(dict_config)


def install_request_logging(app: FastAPI) -> None:
    """Add request/response logging middleware."""

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[override]
        logger = logging.getLogger("http")
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "HTTP %s %s status=%s duration_ms=%.1f",
            request.method, request.url.path, response.status_code, duration_ms,
            extra={"request_id": request_id},
        )
        response.headers["x-request-id"] = request_id
        return response
