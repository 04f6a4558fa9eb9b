"""Tests for department routing."""

import pytest

from common.alert_store import AlertType
from encounter_src.errors import ConflictError, InvalidTransition, NotFoundError
from encounter_src.models import (
    Department,
    OrderStatus,
    Priority,
    RoutingEntryStatus,
    RoutingStatus,
    StaffRole,
)


class TestRoute:
    """Tests for route, advance_routing_status and cancel_routing."""

    def test_route_sets_pending_routing(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.LAB, priority=Priority.URGENT, routed_by="doc-1")

        assert entry.status == RoutingEntryStatus.PENDING
        assert entry.priority == Priority.URGENT
        assert entry.patient_id == "pat-1"
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.PENDING_ROUTING

    def test_route_clears_patient_ready_alerts(self, roomed, clinic):
        clinic.alert_physician(roomed.id, nurse_id="nurse-1")
        assert len(clinic.list_unread("doc-1")) == 1

        clinic.route(roomed.id, Department.IMAGING, routed_by="doc-1")

        assert clinic.list_unread("doc-1") == []

    def test_route_terminal_encounter(self, roomed, clinic):
        clinic.cancel_encounter(roomed.id)
        with pytest.raises(ConflictError):
            clinic.route(roomed.id, Department.LAB)

    def test_route_unknown_encounter(self, clinic):
        with pytest.raises(NotFoundError):
            clinic.route("missing", Department.LAB)

    def test_advance_to_completion(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.PHARMACY)

        started = clinic.advance_routing_status(entry.id, RoutingEntryStatus.IN_PROGRESS)
        assert started.started_at is not None
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.PENDING_ROUTING

        done = clinic.advance_routing_status(entry.id, RoutingEntryStatus.COMPLETED)
        assert done.completed_at is not None
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.ROUTING_COMPLETE

    def test_completed_entry_cannot_restart(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.LAB)
        clinic.advance_routing_status(entry.id, RoutingEntryStatus.COMPLETED)

        with pytest.raises(InvalidTransition) as exc_info:
            clinic.advance_routing_status(entry.id, RoutingEntryStatus.IN_PROGRESS)

        assert exc_info.value.entity == "routing_entry"

    def test_cancel_appends_reason_to_notes(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.LAB, notes="Fasting")

        cancelled = clinic.cancel_routing(entry.id, reason="Patient refused")

        assert cancelled.status == RoutingEntryStatus.CANCELLED
        assert cancelled.notes == "Fasting | Cancelled: Patient refused"

    def test_cancel_without_notes(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.LAB)
        assert clinic.cancel_routing(entry.id, reason="Duplicate").notes == "Cancelled: Duplicate"

    def test_cancelled_entries_ignored_in_aggregate(self, roomed, clinic):
        lab = clinic.route(roomed.id, Department.LAB)
        imaging = clinic.route(roomed.id, Department.IMAGING)

        clinic.advance_routing_status(lab.id, RoutingEntryStatus.COMPLETED)
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.PENDING_ROUTING

        clinic.cancel_routing(imaging.id)
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.ROUTING_COMPLETE

    def test_routing_history(self, roomed, clinic, clock):
        first = clinic.route(roomed.id, Department.LAB)
        clock.advance(5)
        second = clinic.route(roomed.id, Department.RECEPTIONIST)

        history = clinic.routing_history(roomed.id)

        assert [e.id for e in history] == [first.id, second.id]


class TestDepartmentQueue:
    """Tests for list_queue."""

    def test_most_urgent_then_oldest(self, roomed, clinic, clock):
        routine = clinic.route(roomed.id, Department.LAB, priority=Priority.ROUTINE)
        clock.advance(1)
        stat = clinic.route(roomed.id, Department.LAB, priority=Priority.STAT)
        clock.advance(1)
        urgent = clinic.route(roomed.id, Department.LAB, priority=Priority.URGENT)
        clock.advance(1)
        later_routine = clinic.route(roomed.id, Department.LAB, priority=Priority.ROUTINE)

        queue = clinic.list_queue(Department.LAB)

        assert [item["id"] for item in queue] == [
            stat.id, urgent.id, routine.id, later_routine.id,
        ]

    def test_queue_item_details(self, roomed, clinic):
        clinic.route(roomed.id, Department.IMAGING)

        item = clinic.list_queue(Department.IMAGING)[0]

        assert item["patient_name"] == "Jane Doe"
        assert item["patient_number"] == "P-001"
        assert item["chief_complaint"] == "Cough"
        assert item["room"] == "Room 1"
        assert item["encounter_status"] == "in_progress"
        assert item["triage_priority"] == "green"

    def test_status_filter(self, roomed, clinic):
        open_entry = clinic.route(roomed.id, Department.LAB)
        done = clinic.route(roomed.id, Department.LAB)
        clinic.advance_routing_status(done.id, RoutingEntryStatus.COMPLETED)

        assert [i["id"] for i in clinic.list_queue(Department.LAB)] == [open_entry.id]
        completed = clinic.list_queue(Department.LAB, [RoutingEntryStatus.COMPLETED])
        assert [i["id"] for i in completed] == [done.id]


class TestAutoComplete:
    """Routing completes itself when the department's last order finishes."""

    def test_completes_after_last_order(self, roomed, clinic):
        clinic.assign_nurse(roomed.id, "nurse-1")
        entry = clinic.route(roomed.id, Department.LAB)
        first = clinic.place_order(roomed.id, Department.LAB, "CBC")
        second = clinic.place_order(roomed.id, Department.LAB, "BMP")
        clinic.mark_read("nurse-1")

        clinic.update_order_status(first.id, OrderStatus.COMPLETED)
        assert clinic.router.get_entry(entry.id).status == RoutingEntryStatus.PENDING

        clinic.update_order_status(second.id, OrderStatus.COMPLETED)
        assert clinic.router.get_entry(entry.id).status == RoutingEntryStatus.COMPLETED
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.ROUTING_COMPLETE

        alerts = clinic.list_unread("nurse-1")
        assert [a.alert_type for a in alerts] == [AlertType.PATIENT_RETURNING]
        assert "Lab" in alerts[0].message

    def test_all_open_entries_completed_with_one_alert(self, roomed, clinic):
        clinic.assign_nurse(roomed.id, "nurse-1")
        first = clinic.route(roomed.id, Department.LAB)
        second = clinic.route(roomed.id, Department.LAB)
        clinic.advance_routing_status(second.id, RoutingEntryStatus.IN_PROGRESS)
        order = clinic.place_order(roomed.id, Department.LAB, "CBC")
        clinic.mark_read("nurse-1")

        clinic.update_order_status(order.id, OrderStatus.CANCELLED)

        statuses = {e.id: e.status for e in clinic.routing_history(roomed.id)}
        assert statuses == {
            first.id: RoutingEntryStatus.COMPLETED,
            second.id: RoutingEntryStatus.COMPLETED,
        }
        assert len(clinic.list_unread("nurse-1")) == 1

    def test_other_department_untouched(self, roomed, clinic):
        lab = clinic.route(roomed.id, Department.LAB)
        pharmacy = clinic.route(roomed.id, Department.PHARMACY)
        order = clinic.place_order(roomed.id, Department.LAB, "CBC")

        clinic.update_order_status(order.id, OrderStatus.COMPLETED)

        assert clinic.router.get_entry(lab.id).status == RoutingEntryStatus.COMPLETED
        assert clinic.router.get_entry(pharmacy.id).status == RoutingEntryStatus.PENDING
        assert clinic.get_encounter(roomed.id).routing_status == RoutingStatus.PENDING_ROUTING

    def test_without_assigned_nurse_alerts_all_nurses(self, roomed, clinic):
        clinic.db.add_staff("Nurse Cole", StaffRole.NURSE, staff_id="nurse-2")
        clinic.route(roomed.id, Department.IMAGING)
        order = clinic.place_order(roomed.id, Department.IMAGING, "X-Ray")

        clinic.update_order_status(order.id, OrderStatus.COMPLETED)

        for nurse in ("nurse-1", "nurse-2"):
            types = [a.alert_type for a in clinic.list_unread(nurse)]
            assert types.count(AlertType.PATIENT_RETURNING) == 1
