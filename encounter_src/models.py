"""Data models for clinic encounter orchestration."""

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class EncounterStatus(Enum):
    """Where the patient is in the visit."""
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"          # Roomed, nobody working yet
    WITH_NURSE = "with_nurse"
    READY_FOR_DOCTOR = "ready_for_doctor"
    WITH_DOCTOR = "with_doctor"
    COMPLETED = "completed"              # Awaiting checkout
    DISCHARGED = "discharged"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EncounterStatus.DISCHARGED, EncounterStatus.CANCELLED)


# Allowed encounter transitions, from -> set of to
ENCOUNTER_TRANSITIONS: dict[EncounterStatus, frozenset[EncounterStatus]] = {
    EncounterStatus.CHECKED_IN: frozenset({
        EncounterStatus.IN_PROGRESS,
        EncounterStatus.CANCELLED,
        EncounterStatus.COMPLETED,
    }),
    EncounterStatus.IN_PROGRESS: frozenset({
        EncounterStatus.WITH_NURSE,
        EncounterStatus.READY_FOR_DOCTOR,
        EncounterStatus.COMPLETED,
        EncounterStatus.CANCELLED,
    }),
    EncounterStatus.WITH_NURSE: frozenset({
        EncounterStatus.READY_FOR_DOCTOR,
        EncounterStatus.COMPLETED,
        EncounterStatus.CANCELLED,
    }),
    EncounterStatus.READY_FOR_DOCTOR: frozenset({
        EncounterStatus.WITH_DOCTOR,
        EncounterStatus.WITH_NURSE,
        EncounterStatus.COMPLETED,
        EncounterStatus.CANCELLED,
    }),
    EncounterStatus.WITH_DOCTOR: frozenset({
        EncounterStatus.WITH_NURSE,
        EncounterStatus.READY_FOR_DOCTOR,
        EncounterStatus.COMPLETED,
        EncounterStatus.CANCELLED,
    }),
    EncounterStatus.COMPLETED: frozenset({EncounterStatus.DISCHARGED}),
    EncounterStatus.DISCHARGED: frozenset(),
    EncounterStatus.CANCELLED: frozenset(),
}


class RoutingStatus(Enum):
    """Aggregate of an encounter's department routing entries."""
    NONE = "none"
    PENDING_ROUTING = "pending_routing"
    ROUTING_COMPLETE = "routing_complete"


class EncounterType(Enum):
    WALK_IN = "walk-in"
    APPOINTMENT = "appointment"
    FOLLOW_UP = "follow-up"
    EMERGENCY = "emergency"


class ResourceKind(Enum):
    ROOM = "room"
    BED = "bed"


class Department(Enum):
    """Departments a patient can be routed to."""
    LAB = "lab"
    PHARMACY = "pharmacy"
    IMAGING = "imaging"
    RECEPTIONIST = "receptionist"


class RoutingEntryStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RoutingEntryStatus.COMPLETED, RoutingEntryStatus.CANCELLED)


ROUTING_TRANSITIONS: dict[RoutingEntryStatus, frozenset[RoutingEntryStatus]] = {
    RoutingEntryStatus.PENDING: frozenset({
        RoutingEntryStatus.IN_PROGRESS,
        RoutingEntryStatus.COMPLETED,
        RoutingEntryStatus.CANCELLED,
    }),
    RoutingEntryStatus.IN_PROGRESS: frozenset({
        RoutingEntryStatus.COMPLETED,
        RoutingEntryStatus.CANCELLED,
    }),
    RoutingEntryStatus.COMPLETED: frozenset(),
    RoutingEntryStatus.CANCELLED: frozenset(),
}


class Priority(Enum):
    """Routing and order priority."""
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class OrderStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    DISPENSED = "dispensed"    # Pharmacy only
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.DISPENSED, OrderStatus.CANCELLED)


# Departments that carry orders
ORDER_DEPARTMENTS = (Department.LAB, Department.IMAGING, Department.PHARMACY)


class StaffRole(Enum):
    DOCTOR = "doctor"
    NURSE = "nurse"
    RECEPTIONIST = "receptionist"
    LAB = "lab"
    PHARMACY = "pharmacy"
    IMAGING = "imaging"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class TriageBand(Enum):
    """Color band from minutes waited since triage."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


def parse_datetime(val):
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)


def _iso(val: datetime | date | None) -> str | None:
    return val.isoformat() if val else None


def _json_or_none(val: str | None) -> Any:
    if not val:
        return None
    return json.loads(val)


@dataclass
class Staff:
    id: str
    name: str
    role: StaffRole
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "is_active": self.is_active,
        }

    @classmethod
    def from_row(cls, row) -> "Staff":
        return cls(
            id=row["id"],
            name=row["name"],
            role=StaffRole(row["role"]),
            is_active=bool(row["is_active"]),
        )


@dataclass
class Patient:
    """Minimal patient record for queue displays."""
    id: str
    patient_number: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "patient_number": self.patient_number, "name": self.name}

    @classmethod
    def from_row(cls, row) -> "Patient":
        return cls(id=row["id"], patient_number=row["patient_number"], name=row["name"])


@dataclass
class Resource:
    """An exam room or short-stay bed."""
    id: str
    kind: ResourceKind
    label: str
    is_available: bool = True
    encounter_id: str | None = None
    patient_id: str | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "label": self.label,
            "is_available": self.is_available,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "assigned_at": _iso(self.assigned_at),
            "assigned_by": self.assigned_by,
            "notes": self.notes,
        }

    @classmethod
    def from_row(cls, row) -> "Resource":
        return cls(
            id=row["id"],
            kind=ResourceKind(row["kind"]),
            label=row["label"],
            is_available=bool(row["is_available"]),
            encounter_id=row["encounter_id"],
            patient_id=row["patient_id"],
            assigned_at=parse_datetime(row["assigned_at"]),
            assigned_by=row["assigned_by"],
            notes=row["notes"],
        )


@dataclass
class Encounter:
    """One patient visit."""
    id: str
    encounter_number: str
    patient_id: str
    status: EncounterStatus = EncounterStatus.CHECKED_IN
    routing_status: RoutingStatus = RoutingStatus.NONE
    encounter_type: EncounterType = EncounterType.WALK_IN
    chief_complaint: str | None = None
    clinic: str | None = None
    encounter_date: date | None = None

    physician_id: str | None = None
    nurse_id: str | None = None
    receptionist_id: str | None = None
    resource_id: str | None = None

    triage_time: datetime | None = None
    checked_in_at: datetime | None = None
    nurse_started_at: datetime | None = None
    doctor_started_at: datetime | None = None
    doctor_completed_at: datetime | None = None
    completed_at: datetime | None = None
    discharged_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    # Latest vitals snapshot; full history lives in vital_signs_history
    vital_signs: dict[str, Any] | None = None
    vitals_recorded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "encounter_number": self.encounter_number,
            "patient_id": self.patient_id,
            "status": self.status.value,
            "routing_status": self.routing_status.value,
            "encounter_type": self.encounter_type.value,
            "chief_complaint": self.chief_complaint,
            "clinic": self.clinic,
            "encounter_date": _iso(self.encounter_date),
            "physician_id": self.physician_id,
            "nurse_id": self.nurse_id,
            "receptionist_id": self.receptionist_id,
            "resource_id": self.resource_id,
            "triage_time": _iso(self.triage_time),
            "checked_in_at": _iso(self.checked_in_at),
            "nurse_started_at": _iso(self.nurse_started_at),
            "doctor_started_at": _iso(self.doctor_started_at),
            "doctor_completed_at": _iso(self.doctor_completed_at),
            "completed_at": _iso(self.completed_at),
            "discharged_at": _iso(self.discharged_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "vital_signs": self.vital_signs,
            "vitals_recorded_at": _iso(self.vitals_recorded_at),
        }

    @classmethod
    def from_row(cls, row) -> "Encounter":
        return cls(
            id=row["id"],
            encounter_number=row["encounter_number"],
            patient_id=row["patient_id"],
            status=EncounterStatus(row["status"]),
            routing_status=RoutingStatus(row["routing_status"]),
            encounter_type=EncounterType(row["encounter_type"]),
            chief_complaint=row["chief_complaint"],
            clinic=row["clinic"],
            encounter_date=date.fromisoformat(row["encounter_date"]) if row["encounter_date"] else None,
            physician_id=row["physician_id"],
            nurse_id=row["nurse_id"],
            receptionist_id=row["receptionist_id"],
            resource_id=row["resource_id"],
            triage_time=parse_datetime(row["triage_time"]),
            checked_in_at=parse_datetime(row["checked_in_at"]),
            nurse_started_at=parse_datetime(row["nurse_started_at"]),
            doctor_started_at=parse_datetime(row["doctor_started_at"]),
            doctor_completed_at=parse_datetime(row["doctor_completed_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            discharged_at=parse_datetime(row["discharged_at"]),
            cancelled_at=parse_datetime(row["cancelled_at"]),
            cancel_reason=row["cancel_reason"],
            vital_signs=_json_or_none(row["vital_signs"]),
            vitals_recorded_at=parse_datetime(row["vitals_recorded_at"]),
        )


@dataclass
class RoutingEntry:
    """A request for a department to act on an encounter."""
    id: str
    encounter_id: str
    patient_id: str
    department: Department
    status: RoutingEntryStatus = RoutingEntryStatus.PENDING
    priority: Priority = Priority.ROUTINE
    routed_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    routed_by: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "department": self.department.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "routed_at": _iso(self.routed_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "routed_by": self.routed_by,
            "notes": self.notes,
        }

    @classmethod
    def from_row(cls, row) -> "RoutingEntry":
        return cls(
            id=row["id"],
            encounter_id=row["encounter_id"],
            patient_id=row["patient_id"],
            department=Department(row["department"]),
            status=RoutingEntryStatus(row["status"]),
            priority=Priority(row["priority"]),
            routed_at=parse_datetime(row["routed_at"]),
            started_at=parse_datetime(row["started_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            routed_by=row["routed_by"],
            notes=row["notes"],
        )


@dataclass
class Order:
    """A lab, imaging or pharmacy order."""
    id: str
    encounter_id: str
    patient_id: str
    department: Department
    item_name: str
    item_code: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    priority: Priority = Priority.ROUTINE
    quantity: int = 1
    ordering_provider_id: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def is_billable(self) -> bool:
        if self.department == Department.PHARMACY:
            return self.status in (OrderStatus.DISPENSED, OrderStatus.COMPLETED)
        return self.status == OrderStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "department": self.department.value,
            "item_name": self.item_name,
            "item_code": self.item_code,
            "status": self.status.value,
            "priority": self.priority.value,
            "quantity": self.quantity,
            "ordering_provider_id": self.ordering_provider_id,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_row(cls, row) -> "Order":
        return cls(
            id=row["id"],
            encounter_id=row["encounter_id"],
            patient_id=row["patient_id"],
            department=Department(row["department"]),
            item_name=row["item_name"],
            item_code=row["item_code"],
            status=OrderStatus(row["status"]),
            priority=Priority(row["priority"]),
            quantity=row["quantity"],
            ordering_provider_id=row["ordering_provider_id"],
            result=_json_or_none(row["result"]),
            created_at=parse_datetime(row["created_at"]),
            completed_at=parse_datetime(row["completed_at"]),
        )


@dataclass
class InvoiceItem:
    description: str
    category: str
    quantity: int
    unit_price: float
    order_id: str | None = None

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "order_id": self.order_id,
        }

    @classmethod
    def from_row(cls, row) -> "InvoiceItem":
        return cls(
            description=row["description"],
            category=row["category"],
            quantity=row["quantity"],
            unit_price=row["unit_price"],
            order_id=row["order_id"],
        )


@dataclass
class Invoice:
    id: str
    invoice_number: str
    encounter_id: str
    patient_id: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    subtotal: float = 0.0
    total: float = 0.0
    items: list[InvoiceItem] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "status": self.status.value,
            "subtotal": self.subtotal,
            "total": self.total,
            "items": [item.to_dict() for item in self.items],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row, items: list[InvoiceItem] | None = None) -> "Invoice":
        return cls(
            id=row["id"],
            invoice_number=row["invoice_number"],
            encounter_id=row["encounter_id"],
            patient_id=row["patient_id"],
            status=InvoiceStatus(row["status"]),
            subtotal=row["subtotal"],
            total=row["total"],
            items=items or [],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


@dataclass
class VitalSignsRecord:
    """One vitals reading in an encounter's history."""
    id: int
    encounter_id: str
    patient_id: str
    recorded_at: datetime
    values: dict[str, Any]
    critical: dict[str, Any] = field(default_factory=dict)
    recorded_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "encounter_id": self.encounter_id,
            "patient_id": self.patient_id,
            "recorded_at": _iso(self.recorded_at),
            "recorded_by": self.recorded_by,
            "values": self.values,
            "critical": self.critical,
        }

    @classmethod
    def from_row(cls, row) -> "VitalSignsRecord":
        return cls(
            id=row["id"],
            encounter_id=row["encounter_id"],
            patient_id=row["patient_id"],
            recorded_at=parse_datetime(row["recorded_at"]),
            values=_json_or_none(row["vital_signs"]) or {},
            critical=_json_or_none(row["critical_values"]) or {},
            recorded_by=row["recorded_by"],
        )
