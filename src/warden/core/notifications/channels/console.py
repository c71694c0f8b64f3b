from __future__ import annotations

from warden.core.notifications.schemas import NotificationPayload


class ConsoleChannel:
    name = "console"

    def notify(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> None:
        marker = "[URGENT] " if urgent else ""
        print(f"[notification] {marker}{payload.title} -> {', '.join(recipients)}\n{payload.body}\nmeta={payload.meta}")
