"""
Structured JSON Logging Module.

Outputs one JSON document per log record with correlation and incident IDs
pulled from the current context.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Per-request correlation ID and per-operation incident ID
correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
incident_id_ctx: ContextVar[Optional[str]] = ContextVar("incident_id", default=None)


class JSONFormatter(logging.Formatter):
    """
    Formatter that dumps records as JSON.
    """

    def __init__(self, service: str = "selfheal"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "service": self.service,
        }

        cid = correlation_id_ctx.get()
        if cid:
            log_data["correlation_id"] = cid

        iid = incident_id_ctx.get()
        if iid:
            log_data["incident_id"] = iid

        # Structured fields passed via extra={"extra_data": {...}}
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", service: str = "selfheal"):
    """
    Configures the root logger to use JSON formatting.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service=service))
    logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("httpx").setLevel("WARNING")
    logging.getLogger("aiosqlite").setLevel("WARNING")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
