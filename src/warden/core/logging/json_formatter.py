from __future__ import annotations

import json
import logging
import re
import traceback
from datetime import datetime, timezone
from typing import Any

from .context import get_log_context

_SECRET_FIELD_RE = re.compile(r"(token|secret|webhook_url|idempotency_key|authorization)", re.IGNORECASE)
_URL_RE = re.compile(r"https?://\S+")


def redact_value(key: str, value: Any) -> Any:
    if _SECRET_FIELD_RE.search(key):
        return "***"
    if isinstance(value, str):
        return _URL_RE.sub("[redacted-url]", value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line; bound context wins over same-named extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_iso_utc": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **get_log_context(),
        }

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                if key not in payload:
                    payload[key] = redact_value(key, value)

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            payload.update(
                exc_type=exc_type.__name__ if exc_type else "Exception",
                exc_msg=str(exc_value) if exc_value else "",
                stack="".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            )

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
