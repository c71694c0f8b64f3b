from .dispatcher import NotificationDispatcher
from .gateway import NotificationDeliveryError, NotificationGateway, NotificationRouter, build_notification_router
from .schemas import NotificationPayload

__all__ = [
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "NotificationGateway",
    "NotificationPayload",
    "NotificationRouter",
    "build_notification_router",
]
