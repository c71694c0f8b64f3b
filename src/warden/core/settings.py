"""Engine settings: YAML defaults overridden by WARDEN_* environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_flag(name: str, default: str = "on") -> bool:
    return os.getenv(name, default).strip().casefold() in {"1", "true", "yes", "on"}


def default_state_dir() -> Path:
    configured = os.getenv("WARDEN_STATE_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".warden"


class DeadlineExtensions(BaseModel):
    hierarchical_hours: int = 24
    committee_hours: int = 48
    automatic_hours: int = 1
    default_hours: int = 12

    def for_strategy(self, strategy: str) -> int:
        if strategy == "hierarchical":
            return self.hierarchical_hours
        if strategy == "committee":
            return self.committee_hours
        if strategy == "automatic":
            return self.automatic_hours
        return self.default_hours


class EngineSettings(BaseModel):
    state_dir: Path = Field(default_factory=default_state_dir)
    test_mode: bool = False
    timezone: str = "UTC"
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: Path | None = None

    scan_interval_minutes: int = 30
    warning_interval_minutes: int = 60
    scan_horizon_hours: int = 24
    anti_thrash_hours: float = 2.0
    urgent_warning_hours: int = 2
    warning_window_hours: int = 24
    scan_max_workers: int = 4
    scan_request_timeout_s: float = 30.0
    expiry_sweep_enabled: bool = True
    expiry_grace_hours: int = 0

    deadline_extensions: DeadlineExtensions = Field(default_factory=DeadlineExtensions)

    notifier_channels: list[str] = Field(default_factory=lambda: ["console"])
    webhook_url: str | None = None
    notify_async: bool = True
    admin_recipients: list[str] = Field(default_factory=lambda: ["admin"])
    seed_default_rules: bool = True


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(config_path: str | Path | None = None) -> EngineSettings:
    raw_path = config_path or os.getenv("WARDEN_CONFIG_PATH")
    base = EngineSettings.model_validate(_load_yaml(Path(raw_path).expanduser())) if raw_path else EngineSettings()

    extensions = base.deadline_extensions
    notifier_raw = os.getenv("WARDEN_NOTIFIER")
    admins_raw = os.getenv("WARDEN_ADMIN_RECIPIENTS")
    return base.model_copy(
        update={
            "state_dir": default_state_dir() if os.getenv("WARDEN_STATE_DIR") else base.state_dir,
            "test_mode": env_flag("WARDEN_TEST_MODE", "on" if base.test_mode else "off"),
            "timezone": os.getenv("WARDEN_TIMEZONE", base.timezone),
            "log_level": os.getenv("WARDEN_LOG_LEVEL", base.log_level),
            "log_to_file": env_flag("WARDEN_LOG_TO_FILE", "on" if base.log_to_file else "off"),
            "log_dir": Path(os.environ["WARDEN_LOG_DIR"]).expanduser() if os.getenv("WARDEN_LOG_DIR") else base.log_dir,
            "scan_interval_minutes": max(1, env_int("WARDEN_SCAN_INTERVAL_MINUTES", base.scan_interval_minutes)),
            "warning_interval_minutes": max(1, env_int("WARDEN_WARNING_INTERVAL_MINUTES", base.warning_interval_minutes)),
            "scan_horizon_hours": max(1, env_int("WARDEN_SCAN_HORIZON_HOURS", base.scan_horizon_hours)),
            "anti_thrash_hours": max(0.0, env_float("WARDEN_ANTI_THRASH_HOURS", base.anti_thrash_hours)),
            "urgent_warning_hours": max(1, env_int("WARDEN_URGENT_WARNING_HOURS", base.urgent_warning_hours)),
            "warning_window_hours": max(1, env_int("WARDEN_WARNING_WINDOW_HOURS", base.warning_window_hours)),
            "scan_max_workers": max(1, env_int("WARDEN_SCAN_MAX_WORKERS", base.scan_max_workers)),
            "scan_request_timeout_s": max(0.1, env_float("WARDEN_SCAN_REQUEST_TIMEOUT_S", base.scan_request_timeout_s)),
            "expiry_sweep_enabled": env_flag("WARDEN_EXPIRY_SWEEP", "on" if base.expiry_sweep_enabled else "off"),
            "expiry_grace_hours": max(0, env_int("WARDEN_EXPIRY_GRACE_HOURS", base.expiry_grace_hours)),
            "deadline_extensions": DeadlineExtensions(
                hierarchical_hours=env_int("WARDEN_EXTEND_HIERARCHICAL_HOURS", extensions.hierarchical_hours),
                committee_hours=env_int("WARDEN_EXTEND_COMMITTEE_HOURS", extensions.committee_hours),
                automatic_hours=env_int("WARDEN_EXTEND_AUTOMATIC_HOURS", extensions.automatic_hours),
                default_hours=env_int("WARDEN_EXTEND_DEFAULT_HOURS", extensions.default_hours),
            ),
            "notifier_channels": _split_csv(notifier_raw) if notifier_raw is not None else base.notifier_channels,
            "webhook_url": os.getenv("WARDEN_WEBHOOK_URL", base.webhook_url or "") or None,
            "notify_async": env_flag("WARDEN_NOTIFY_ASYNC", "on" if base.notify_async else "off"),
            "admin_recipients": _split_csv(admins_raw) if admins_raw is not None else base.admin_recipients,
            "seed_default_rules": env_flag("WARDEN_SEED_DEFAULT_RULES", "on" if base.seed_default_rules else "off"),
        }
    )
