from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_log_context
from app.core.config import get_settings


# Extra keys copied into the "fields" object; anything else passed via extra= is dropped.
HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
ATTRIBUTE_FIELDS = frozenset(
    {
        "tenant_id",
        "entity_kind",
        "entity_id",
        "field_definition_id",
        "field_key",
        "declared_type",
    }
)
QUALIFICATION_FIELDS = frozenset({"rule_id", "operator", "outcome", "reason"})
EVENT_FIELDS = frozenset({"event_name", "error"})
LOGGED_FIELDS = HTTP_FIELDS | ATTRIBUTE_FIELDS | QUALIFICATION_FIELDS | EVENT_FIELDS

_MAX_ERROR_LENGTH = 500


class LogContextFilter(logging.Filter):
    """Fills correlation and tenant ids from the request context when the caller did not."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if not getattr(record, key, None):
                setattr(record, key, value)
        return True


_base_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in LOGGED_FIELDS and value is not None
    }
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _extra_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_crm_configured", False):
        return

    resolved = getattr(logging, level or get_settings().log_level, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root.handlers = [handler]
    root.setLevel(resolved)
    logging.setLogRecordFactory(_record_factory)
    root._crm_configured = True  # type: ignore[attr-defined]
