"""Request-scoped fields stamped onto every JSON log line.

Scans run requests on worker threads through ``contextvars.copy_context``, so fields
bound by the job wrapper follow each request onto its thread.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Iterator, Mapping

CONTEXT_FIELDS = ("correlation_id", "job_id", "request_id", "rule_id")

_bound: ContextVar[Mapping[str, str]] = ContextVar("warden_log_context", default=MappingProxyType({}))


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Bind ``fields`` for the duration of the block.

    ``None`` values and names outside ``CONTEXT_FIELDS`` are ignored, so an inner block
    never clears what an outer one bound.
    """
    merged = dict(_bound.get())
    merged.update({name: value for name, value in fields.items() if value is not None and name in CONTEXT_FIELDS})
    token = _bound.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _bound.reset(token)


def current_correlation_id() -> str | None:
    return _bound.get().get("correlation_id")


def get_log_context() -> dict[str, str]:
    return dict(_bound.get())
