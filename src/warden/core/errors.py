from __future__ import annotations


class WardenError(Exception):
    """Base error for the approval and escalation engine."""


class ValidationError(WardenError):
    """Malformed configuration, rule or escalation input."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(WardenError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConflictError(WardenError):
    """The operation is incompatible with the current state of the request."""

    def __init__(self, message: str, request_id: str | None = None, status: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.status = status
