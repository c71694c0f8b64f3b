from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterator

import pytest

from warden.core.notifications.schemas import NotificationPayload
from warden.core.runtime import Runtime, build_runtime
from warden.core.settings import load_settings

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class RecorderGateway:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    def notify(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> None:
        if self.fail:
            raise RuntimeError("gateway unavailable")
        self.sent.append({"recipients": list(recipients), "payload": payload, "urgent": urgent})


@pytest.fixture(autouse=True)
def warden_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("WARDEN_TEST_MODE", "on")
    monkeypatch.setenv("WARDEN_LOG_TO_FILE", "off")
    monkeypatch.setenv("WARDEN_STATE_DIR", str(tmp_path / "state"))
    for name in (
        "WARDEN_CONFIG_PATH",
        "WARDEN_NOTIFIER",
        "WARDEN_WEBHOOK_URL",
        "WARDEN_NOTIFY_ASYNC",
        "WARDEN_ANTI_THRASH_HOURS",
        "WARDEN_SCAN_MAX_WORKERS",
        "WARDEN_EXPIRY_GRACE_HOURS",
        "WARDEN_ADMIN_RECIPIENTS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def gateway() -> RecorderGateway:
    return RecorderGateway()


@pytest.fixture
def runtime(tmp_path, gateway: RecorderGateway) -> Iterator[Runtime]:
    settings = load_settings().model_copy(update={"state_dir": tmp_path / "state", "seed_default_rules": False})
    built = build_runtime(settings=settings, gateway=gateway)
    yield built
    built.close()
