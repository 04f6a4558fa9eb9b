"""Common utilities and channels for clinic notifications."""

from .channels import (
    LivePushChannel,
    PushMessage,
    Subscription,
)
from .alert_store import (
    AlertStore,
    AlertType,
    CriticalDirection,
    StoredAlert,
    CriticalResultAlert,
    AlertAuditEntry,
)

__all__ = [
    # Channels
    "LivePushChannel",
    "PushMessage",
    "Subscription",
    # Alert Store
    "AlertStore",
    "AlertType",
    "CriticalDirection",
    "StoredAlert",
    "CriticalResultAlert",
    "AlertAuditEntry",
]
