from .context import CONTEXT_FIELDS, current_correlation_id, get_log_context, log_context
from .json_formatter import JSONFormatter, redact_value
from .setup import configure_logging

__all__ = [
    "CONTEXT_FIELDS",
    "JSONFormatter",
    "configure_logging",
    "current_correlation_id",
    "get_log_context",
    "log_context",
    "redact_value",
]
