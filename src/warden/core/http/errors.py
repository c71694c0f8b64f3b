from __future__ import annotations

from warden.core.errors import WardenError


class WardenHTTPError(WardenError):
    """Base error for outbound HTTP calls made by delivery channels."""


class WardenHTTPStatusError(WardenHTTPError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WardenHTTPNetworkError(WardenHTTPError):
    """Transport failure that survived every retry."""
