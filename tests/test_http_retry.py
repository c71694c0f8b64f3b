from __future__ import annotations

import httpx
import pytest

from warden.core.http import WardenHTTPNetworkError, WardenHTTPStatusError
from warden.core.http.client import post_json


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch) -> None:
    monkeypatch.setattr("warden.core.http.client.time.sleep", lambda _: None)
    monkeypatch.setattr("warden.core.http.client.random.random", lambda: 0.5)


def test_post_json_retries_transient_http_status() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, request=request)
        return httpx.Response(200, request=request, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))

    response = post_json("http://hooks.local/escalations", {"event": "approval.escalated"}, retries=2, client=client)

    assert response.status_code == 200
    assert calls["count"] == 3


def test_post_json_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    with pytest.raises(WardenHTTPStatusError) as excinfo:
        post_json("http://hooks.local/escalations", {}, retries=3, client=client)

    assert excinfo.value.status_code == 400
    assert calls["count"] == 1
    assert "[redacted-url]" in str(excinfo.value)


def test_post_json_gives_up_after_network_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    with pytest.raises(WardenHTTPNetworkError):
        post_json("http://hooks.local/escalations", {}, retries=1, client=client)

    assert calls["count"] == 2


def test_post_json_sends_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    post_json("http://hooks.local/escalations", {"a": 1}, idempotency_key="abc", client=client)

    assert seen[0].headers["Idempotency-Key"] == "abc"
    assert seen[0].headers["Content-Type"] == "application/json"
