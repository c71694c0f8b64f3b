from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from warden.core.clock import now_iso
from warden.core.events.outbox import EventOutbox
from warden.core.ledger.keys import notification_key
from warden.core.ledger.ledger import ExecutionLedger
from warden.core.notifications.gateway import NotificationGateway
from warden.core.notifications.schemas import NotificationPayload

logger = logging.getLogger("warden.notifications")


class NotificationDispatcher:
    """Fire-and-forget delivery through the gateway.

    Every attempt is written to the execution ledger so escalations can report how many
    notifications a request has already produced. Delivery failures are logged and
    re-emitted as ``notification.failed`` events, never raised to the caller.
    """

    def __init__(
        self,
        gateway: NotificationGateway,
        ledger: ExecutionLedger,
        outbox: EventOutbox,
        run_async: bool = False,
        max_workers: int = 2,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.outbox = outbox
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="warden-notify") if run_async else None

    def dispatch(self, recipients: list[str], payload: NotificationPayload, urgent: bool = False) -> Future | None:
        if not recipients:
            logger.info("notification_skipped_no_recipients", extra={"extra_fields": {"event": payload.event, "request_id": payload.request_id}})
            return None
        if self._executor is None:
            self._deliver(recipients, payload, urgent)
            return None
        return self._executor.submit(self._deliver, recipients, payload, urgent)

    @property
    def asynchronous(self) -> bool:
        return self._executor is not None

    def attempts(self, request_id: str) -> int:
        return self.ledger.count("notification", request_id=request_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _deliver(self, recipients: list[str], payload: NotificationPayload, urgent: bool) -> bool:
        attempted_at = now_iso()
        key = notification_key(payload.request_id or "-", payload.event, recipients, attempted_at)
        meta = {"request_id": payload.request_id, "event": payload.event, "recipients": recipients, "urgent": urgent}
        try:
            self.gateway.notify(recipients, payload, urgent)
        except Exception as exc:
            self.ledger.record(key, "notification", "failed", {**meta, "error": str(exc)})
            logger.warning(
                "notification_failed",
                extra={"extra_fields": {**meta, "error": str(exc), "exc_type": exc.__class__.__name__}},
            )
            self.outbox.emit("notification.failed", {**meta, "error": str(exc)})
            return False
        self.ledger.record(key, "notification", "succeeded", meta)
        logger.info("notification_sent", extra={"extra_fields": meta})
        return True
