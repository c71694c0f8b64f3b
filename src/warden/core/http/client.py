from __future__ import annotations

import random
import threading
import time
from typing import Any

import httpx

from warden.core.settings import env_float

from .errors import WardenHTTPNetworkError, WardenHTTPStatusError

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_RETRYABLE_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError)
_USER_AGENT = "warden-escalation/1.0"

_client: httpx.Client | None = None
_client_lock = threading.Lock()


def _timeout(total_s: float | None = None) -> httpx.Timeout:
    total = max(0.1, total_s if total_s is not None else env_float("WARDEN_HTTP_TIMEOUT_S", 10.0))
    connect = max(0.1, env_float("WARDEN_HTTP_CONNECT_TIMEOUT_S", 5.0))
    return httpx.Timeout(total, connect=min(connect, total))


def get_http_client() -> httpx.Client:
    global _client
    with _client_lock:
        if _client is None or _client.is_closed:
            _client = httpx.Client(timeout=_timeout(), headers={"User-Agent": _USER_AGENT})
        return _client


def close_http_client() -> None:
    global _client
    with _client_lock:
        if _client is not None:
            _client.close()
        _client = None


def post_json(
    url: str,
    payload: dict[str, Any],
    *,
    timeout_s: float | None = None,
    retries: int = 2,
    idempotency_key: str | None = None,
    redact_url: bool = True,
    client: httpx.Client | None = None,
) -> httpx.Response:
    """POST ``payload`` with bounded exponential backoff on transport errors and 429/5xx."""
    shown_url = "[redacted-url]" if redact_url else url
    headers = {"Content-Type": "application/json"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    http = client or get_http_client()
    backoff_base = max(0.01, env_float("WARDEN_HTTP_BACKOFF_BASE_S", 0.25))
    backoff_max = max(0.01, env_float("WARDEN_HTTP_BACKOFF_MAX_S", 2.0))

    attempt = 0
    while True:
        try:
            response = http.post(url, json=payload, headers=headers, timeout=_timeout(timeout_s))
        except _RETRYABLE_EXCEPTIONS as exc:
            if attempt >= retries:
                raise WardenHTTPNetworkError(f"POST {shown_url} failed after {attempt + 1} attempts: {exc.__class__.__name__}") from exc
        except httpx.HTTPError as exc:
            raise WardenHTTPNetworkError(f"POST {shown_url} failed: {exc.__class__.__name__}") from exc
        else:
            if response.is_success:
                return response
            if response.status_code not in _RETRYABLE_STATUS_CODES or attempt >= retries:
                raise WardenHTTPStatusError(f"HTTP status {response.status_code} for {shown_url}", status_code=response.status_code)

        time.sleep(min(backoff_max, backoff_base * (2**attempt)) * (0.5 + random.random()))
        attempt += 1
