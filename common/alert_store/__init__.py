"""Alert storage module for persistent clinic notifications.

Provides SQLite-backed storage for the durable side of notification delivery:
- Directed alerts per recipient with independent read state
- Critical lab results, idempotent per (order, direction) with one-way acknowledgment
- Audit trail (alerts are never deleted)
"""

from .models import (
    AlertType,
    AuditAction,
    CriticalDirection,
    StoredAlert,
    CriticalResultAlert,
    AlertAuditEntry,
)
from .store import AlertStore

__all__ = [
    "AlertType",
    "AuditAction",
    "CriticalDirection",
    "StoredAlert",
    "CriticalResultAlert",
    "AlertAuditEntry",
    "AlertStore",
]
