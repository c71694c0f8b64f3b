from __future__ import annotations

import logging
from typing import Protocol

from warden.core.errors import WardenError
from warden.core.notifications.channels.console import ConsoleChannel
from warden.core.notifications.channels.webhook import WebhookChannel
from warden.core.notifications.schemas import NotificationPayload
from warden.core.settings import EngineSettings

logger = logging.getLogger("warden.notifications")


class NotificationGateway(Protocol):
    def notify(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> None: ...


class NotificationDeliveryError(WardenError):
    def __init__(self, failures: dict[str, Exception]) -> None:
        super().__init__("notification delivery failed on: " + "; ".join(f"{name}: {exc}" for name, exc in sorted(failures.items())))
        self.failures = failures


class NotificationRouter:
    """Fans a notification out to every channel; one failing channel does not starve the others."""

    def __init__(self, channels: list[NotificationGateway]) -> None:
        self.channels = channels

    def notify(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> None:
        failures: dict[str, Exception] = {}
        for channel in self.channels:
            channel_name = getattr(channel, "name", channel.__class__.__name__)
            try:
                channel.notify(recipients, payload, urgent)
            except Exception as exc:
                failures[channel_name] = exc
        if failures:
            raise NotificationDeliveryError(failures)


def build_notification_router(settings: EngineSettings) -> NotificationRouter:
    requested = [name.casefold() for name in settings.notifier_channels]
    channels: list[NotificationGateway] = []

    if "console" in requested or not requested:
        channels.append(ConsoleChannel())

    if "webhook" in requested:
        if settings.webhook_url:
            channels.append(WebhookChannel(webhook_url=settings.webhook_url))
        else:
            logger.warning("webhook_channel_skipped", extra={"extra_fields": {"reason": "WARDEN_WEBHOOK_URL not set"}})

    if not channels:
        channels.append(ConsoleChannel())

    return NotificationRouter(channels=channels)
