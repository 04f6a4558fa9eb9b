"""Read-side projections for clinic dashboards.

Nothing here is stored. Triage bands and workflow labels are recomputed from
the canonical encounter status, its routing entries and its open orders every
time a queue is read, so they can never drift from the underlying state.
"""

from datetime import datetime
from typing import Iterable, Mapping

from .config import config
from .models import (
    Department,
    EncounterStatus,
    RoutingEntry,
    RoutingEntryStatus,
    TriageBand,
)

CLINICAL_DEPARTMENTS = (Department.LAB, Department.IMAGING, Department.PHARMACY)


def minutes_waiting(triage_time: datetime | None, now: datetime | None = None) -> float:
    if triage_time is None:
        return 0.0
    now = now or datetime.now()
    return max(0.0, (now - triage_time).total_seconds() / 60)


def triage_priority(
    triage_time: datetime | None,
    now: datetime | None = None,
    yellow_minutes: int | None = None,
    red_minutes: int | None = None,
) -> TriageBand:
    """Band by time since triage: green, then yellow, then red."""
    yellow = config.TRIAGE_YELLOW_MINUTES if yellow_minutes is None else yellow_minutes
    red = config.TRIAGE_RED_MINUTES if red_minutes is None else red_minutes

    waited = minutes_waiting(triage_time, now)
    if waited < yellow:
        return TriageBand.GREEN
    if waited < red:
        return TriageBand.YELLOW
    return TriageBand.RED


def derive_workflow_status(
    status: EncounterStatus | str,
    routing_entries: Iterable[RoutingEntry],
    pending_orders: Mapping[str, int] | None = None,
) -> str:
    """Dashboard label for where a patient is right now.

    Args:
        status: Canonical encounter status
        routing_entries: All routing entries for the encounter
        pending_orders: Department value -> count of non-terminal orders

    Checkout readiness comes only from the encounter being completed.
    Routing to the front desk shows where the patient is but does not make
    them ready for checkout.
    """
    status = EncounterStatus(status)

    if status == EncounterStatus.CANCELLED:
        return "cancelled"
    if status == EncounterStatus.DISCHARGED:
        return "discharged"
    if status == EncounterStatus.COMPLETED:
        return "ready_for_checkout"

    active_departments = {
        entry.department
        for entry in routing_entries
        if entry.status in (RoutingEntryStatus.PENDING, RoutingEntryStatus.IN_PROGRESS)
    }
    clinical = [d for d in CLINICAL_DEPARTMENTS if d in active_departments]
    if len(clinical) > 1:
        return "in_multiple_departments"
    if clinical:
        return f"in_{clinical[0].value}"
    if Department.RECEPTIONIST in active_departments:
        return "at_front_desk"

    if status == EncounterStatus.WITH_DOCTOR:
        return "with_doctor"
    if status == EncounterStatus.READY_FOR_DOCTOR:
        return "waiting_for_doctor"
    if pending_orders and sum(pending_orders.values()) > 0:
        return "orders_pending"
    if status == EncounterStatus.WITH_NURSE:
        return "with_nurse"
    if status == EncounterStatus.IN_PROGRESS:
        return "roomed"
    return "waiting_for_room"
