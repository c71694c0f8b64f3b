from __future__ import annotations

import hashlib

from warden.core.http.client import post_json
from warden.core.ledger.keys import canonical_json
from warden.core.notifications.schemas import NotificationPayload


class WebhookChannel:
    """Posts each notification as one JSON document to a generic webhook."""

    name = "webhook"

    def __init__(self, webhook_url: str, timeout_s: float = 5.0, retries: int = 1) -> None:
        self.webhook_url = webhook_url
        self.timeout_s = timeout_s
        self.retries = retries

    def notify(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> None:
        body = {
            "event": payload.event,
            "title": payload.title,
            "body": payload.body,
            "request_id": payload.request_id,
            "recipients": recipients,
            "urgent": urgent,
            "channels": payload.channels,
            "meta": payload.meta,
        }
        post_json(
            self.webhook_url,
            body,
            timeout_s=self.timeout_s,
            retries=self.retries,
            idempotency_key=hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest(),
        )
