"""Notification channels for clinic alerts."""

from .live_push import LivePushChannel, PushMessage, Subscription

__all__ = [
    "LivePushChannel",
    "PushMessage",
    "Subscription",
]
