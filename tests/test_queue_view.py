"""Tests for triage bands and workflow status derivation."""

from datetime import datetime, timedelta

from encounter_src.models import (
    Department,
    EncounterStatus,
    RoutingEntry,
    RoutingEntryStatus,
    TriageBand,
)
from encounter_src.queue_view import derive_workflow_status, triage_priority


def entry(department: Department, status: RoutingEntryStatus) -> RoutingEntry:
    return RoutingEntry(
        id=f"r-{department.value}",
        encounter_id="enc-1",
        patient_id="pat-1",
        department=department,
        status=status,
    )


class TestTriagePriority:
    """Tests for triage_priority."""

    def test_bands(self):
        now = datetime(2024, 6, 3, 12, 0)

        assert triage_priority(now - timedelta(minutes=5), now) == TriageBand.GREEN
        assert triage_priority(now - timedelta(minutes=15), now) == TriageBand.YELLOW
        assert triage_priority(now - timedelta(minutes=29), now) == TriageBand.YELLOW
        assert triage_priority(now - timedelta(minutes=30), now) == TriageBand.RED

    def test_custom_thresholds(self):
        now = datetime(2024, 6, 3, 12, 0)
        band = triage_priority(now - timedelta(minutes=6), now, yellow_minutes=5, red_minutes=10)
        assert band == TriageBand.YELLOW

    def test_missing_triage_time_is_green(self):
        assert triage_priority(None) == TriageBand.GREEN


class TestDeriveWorkflowStatus:
    """Tests for derive_workflow_status."""

    def test_status_only_labels(self):
        assert derive_workflow_status(EncounterStatus.CHECKED_IN, []) == "waiting_for_room"
        assert derive_workflow_status(EncounterStatus.IN_PROGRESS, []) == "roomed"
        assert derive_workflow_status(EncounterStatus.WITH_NURSE, []) == "with_nurse"
        assert derive_workflow_status(EncounterStatus.READY_FOR_DOCTOR, []) == "waiting_for_doctor"
        assert derive_workflow_status(EncounterStatus.WITH_DOCTOR, []) == "with_doctor"
        assert derive_workflow_status(EncounterStatus.COMPLETED, []) == "ready_for_checkout"
        assert derive_workflow_status(EncounterStatus.DISCHARGED, []) == "discharged"
        assert derive_workflow_status(EncounterStatus.CANCELLED, []) == "cancelled"

    def test_accepts_status_string(self):
        assert derive_workflow_status("with_nurse", []) == "with_nurse"

    def test_single_department(self):
        entries = [entry(Department.LAB, RoutingEntryStatus.PENDING)]
        assert derive_workflow_status(EncounterStatus.WITH_DOCTOR, entries) == "in_lab"

    def test_multiple_departments(self):
        entries = [
            entry(Department.LAB, RoutingEntryStatus.IN_PROGRESS),
            entry(Department.PHARMACY, RoutingEntryStatus.PENDING),
        ]
        assert derive_workflow_status(EncounterStatus.WITH_NURSE, entries) == "in_multiple_departments"

    def test_finished_routing_is_ignored(self):
        entries = [
            entry(Department.LAB, RoutingEntryStatus.COMPLETED),
            entry(Department.IMAGING, RoutingEntryStatus.CANCELLED),
        ]
        assert derive_workflow_status(EncounterStatus.WITH_NURSE, entries) == "with_nurse"

    def test_front_desk_routing_is_informational(self):
        """Routing to the front desk does not make the patient ready for checkout."""
        entries = [entry(Department.RECEPTIONIST, RoutingEntryStatus.PENDING)]

        assert derive_workflow_status(EncounterStatus.WITH_NURSE, entries) == "at_front_desk"
        assert derive_workflow_status(EncounterStatus.COMPLETED, entries) == "ready_for_checkout"

    def test_orders_pending(self):
        pending = {"lab": 2, "imaging": 0, "pharmacy": 0}
        assert derive_workflow_status(EncounterStatus.WITH_NURSE, [], pending) == "orders_pending"

    def test_completed_wins_over_open_routing(self):
        entries = [entry(Department.LAB, RoutingEntryStatus.PENDING)]
        assert derive_workflow_status(EncounterStatus.COMPLETED, entries) == "ready_for_checkout"
