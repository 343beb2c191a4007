"""
Logging configuration.

Application modules log through ``structlog.get_logger(__name__)``; this module
routes structlog into the stdlib root logger so that uvicorn, SQLAlchemy and
application events share one set of handlers. Values bound with
``structlog.contextvars.bind_contextvars`` (request_id, cluster_id) are copied
onto every record.
"""
import json
import logging
import sys
from typing import Any, Dict, Optional

import structlog

from cilikube.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_CONFIGURED = False

_RESERVED_ATTRS = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "thread", "threadName", "taskName",
}


class ContextFilter(logging.Filter):
    """Copy structlog context variables onto stdlib log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        for key, value in structlog.contextvars.get_contextvars().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "service"):
            record.service = "cilikube"
        return True


class KeyValueFormatter(logging.Formatter):
    """Plain text formatter that appends structured extras as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key != "service"
        ]
        return f"{base} {' '.join(extras)}" if extras else base


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter with redaction of sensitive fields."""

    REDACT_KEYS = {"password", "passwd", "secret", "token", "authorization", "kubeconfig", "jwt"}

    def __init__(self, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            safe_key = str(key)
            payload[safe_key] = "***REDACTED***" if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(settings: Settings, *, debug: bool = False) -> None:
    """Configure the root logger and structlog once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else settings.log_level.upper())
    for h in list(root.handlers):
        root.removeHandler(h)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(ContextFilter())
    if settings.log_json:
        console_handler.setFormatter(JSONFormatter(datefmt=LOG_DATE_FORMAT))
    else:
        console_handler.setFormatter(KeyValueFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(console_handler)

    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(log_name)
        lg.handlers = []
        lg.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True
