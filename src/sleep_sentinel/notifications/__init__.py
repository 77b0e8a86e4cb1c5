"""Notification sub-package — alert delivery channels."""

from sleep_sentinel.notifications.handlers import (
    DispatchResult,
    NotificationDispatcher,
    NotificationHandler,
    alert_summary,
    create_dispatcher,
)

__all__ = ["DispatchResult", "NotificationDispatcher", "NotificationHandler", "alert_summary", "create_dispatcher"]
