"""Best-effort notification dispatch for payment outcomes."""

from .dispatcher import (
    HttpNotificationDispatcher,
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
    build_notification_dispatcher,
)

__all__ = [
    "HttpNotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "NotificationDispatcher",
    "build_notification_dispatcher",
]
