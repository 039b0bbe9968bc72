"""JSON log output with the request context attached to every line."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Mapping

from ..middlewares import actor_role_ctx_var, principal_ctx_var, request_id_ctx_var

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx_var),
    ("principal", principal_ctx_var),
    ("role", actor_role_ctx_var),
)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; stock events put their fields in ``extra_data``."""

    def __init__(self, service: str = "labstock") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.utcnow().isoformat(timespec="milliseconds") + "Z",
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                payload[key] = value
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, Mapping):
            payload.update({key: value for key, value in extra.items() if value is not None})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | int = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(_resolve_level(level))
    # sqlalchemy echoes every statement at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    logger.log(level, event, extra={"extra_data": fields})
