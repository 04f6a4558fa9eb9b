"""Data models for persistent clinic alert storage."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AlertType(Enum):
    """Types of directed alerts raised by the encounter workflow."""
    PATIENT_CHECKED_IN = "patient_checked_in"
    PATIENT_ASSIGNED = "patient_assigned"      # Nurse assigned to a patient
    PATIENT_READY = "patient_ready"            # Patient ready for the doctor
    VITALS_CRITICAL = "vitals_critical"
    PHYSICIAN_COMPLETE = "physician_complete"  # Patient bounced back to nurse
    PATIENT_RETURNING = "patient_returning"    # Department finished its work
    READY_FOR_CHECKOUT = "ready_for_checkout"
    CRITICAL_RESULT = "critical_result"
    CUSTOM = "custom"

    @classmethod
    def display_name(cls, alert_type: "AlertType | str") -> str:
        """Get human-readable display name for an alert type."""
        display_names = {
            cls.PATIENT_CHECKED_IN: "New Patient Checked In",
            cls.PATIENT_ASSIGNED: "Patient Assigned",
            cls.PATIENT_READY: "Patient Ready for Doctor",
            cls.VITALS_CRITICAL: "Critical Vital Signs",
            cls.PHYSICIAN_COMPLETE: "Doctor Finished",
            cls.PATIENT_RETURNING: "Patient Returning",
            cls.READY_FOR_CHECKOUT: "Patient Ready for Checkout",
            cls.CRITICAL_RESULT: "Critical Lab Result",
            cls.CUSTOM: "Notification",
        }
        if isinstance(alert_type, str):
            try:
                alert_type = cls(alert_type)
            except ValueError:
                return alert_type
        return display_names.get(alert_type, alert_type.value)


class CriticalDirection(Enum):
    """Direction of an out-of-range lab value."""
    CRITICAL_LOW = "critical_low"
    CRITICAL_HIGH = "critical_high"


class AuditAction(Enum):
    """Actions tracked in the alert audit log."""
    CREATED = "created"
    READ = "read"
    ACKNOWLEDGED = "acknowledged"


def parse_datetime(val):
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)


@dataclass
class StoredAlert:
    """A directed notification tied to an encounter."""
    id: str
    alert_type: AlertType
    recipient_id: str
    message: str
    title: str = ""

    encounter_id: str | None = None
    patient_id: str | None = None
    sender_id: str | None = None

    is_read: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    read_at: datetime | None = None

    # Outbox effect key, so a retried delivery never writes a second row
    dedupe_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "alert_type": self.alert_type.value,
            "alert_type_display": AlertType.display_name(self.alert_type),
            "recipient_id": self.recipient_id,
            "sender_id": self.sender_id,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "title": self.title,
            "message": self.message,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }

    @classmethod
    def from_row(cls, row: tuple) -> "StoredAlert":
        """Create from database row tuple."""
        # Row order matches ALERT_COLUMNS: id, alert_type, recipient_id, message,
        # title, encounter_id, patient_id, sender_id, is_read, created_at,
        # read_at, dedupe_key
        return cls(
            id=row[0],
            alert_type=AlertType(row[1]),
            recipient_id=row[2],
            message=row[3] or "",
            title=row[4] or "",
            encounter_id=row[5],
            patient_id=row[6],
            sender_id=row[7],
            is_read=bool(row[8]),
            created_at=parse_datetime(row[9]),
            read_at=parse_datetime(row[10]),
            dedupe_key=row[11],
        )


@dataclass
class CriticalResultAlert:
    """An out-of-range lab value that requires acknowledgment."""
    id: str
    lab_order_id: str
    alert_type: CriticalDirection
    analyte: str
    result_value: float
    ordering_provider_id: str | None = None
    encounter_id: str | None = None
    patient_id: str | None = None
    reference_range: str | None = None

    acknowledged: bool = False
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lab_order_id": self.lab_order_id,
            "alert_type": self.alert_type.value,
            "analyte": self.analyte,
            "result_value": self.result_value,
            "reference_range": self.reference_range,
            "ordering_provider_id": self.ordering_provider_id,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: tuple) -> "CriticalResultAlert":
        """Create from database row tuple (CRITICAL_COLUMNS order)."""
        return cls(
            id=row[0],
            lab_order_id=row[1],
            alert_type=CriticalDirection(row[2]),
            analyte=row[3],
            result_value=row[4],
            ordering_provider_id=row[5],
            encounter_id=row[6],
            patient_id=row[7],
            reference_range=row[8],
            acknowledged=bool(row[9]),
            acknowledged_at=parse_datetime(row[10]),
            acknowledged_by=row[11],
            created_at=parse_datetime(row[12]),
        )


@dataclass
class AlertAuditEntry:
    """Audit log entry for alert actions."""
    id: int
    alert_id: str
    action: AuditAction
    performed_by: str | None
    performed_at: datetime
    details: str | None = None

    @classmethod
    def from_row(cls, row: tuple) -> "AlertAuditEntry":
        """Create from database row tuple."""
        return cls(
            id=row[0],
            alert_id=row[1],
            action=AuditAction(row[2]),
            performed_by=row[3],
            performed_at=parse_datetime(row[4]),
            details=row[5],
        )
