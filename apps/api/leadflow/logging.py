"""Structured JSON logging for the API process.

Every record is stamped with the request correlation id and rendered as one
JSON object per line. Only whitelisted ``extra=`` keys are emitted, so buyer
contact details passed by accident never reach the log stream.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings


_RESERVED_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

# request/response fields written by the HTTP middleware
_HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
# buyer pipeline fields written by the service layer
_BUYER_FIELDS = ("operation", "buyer_id", "actor_user_id", "outcome", "changed_fields", "row_count")
_EMITTED_FIELDS = frozenset(_HTTP_FIELDS + _BUYER_FIELDS + ("error", "event_name"))

_MAX_ERROR_LENGTH = 500


def _stamp_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_correlation_id(record)
        return True


_base_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_correlation_id(_base_record_factory(*args, **kwargs))


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in _EMITTED_FIELDS and key not in _RESERVED_KEYS
    }
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
