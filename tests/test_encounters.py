"""Tests for the encounter lifecycle."""

import pytest

from common.alert_store import AlertType
from encounter_src.errors import (
    ConflictError,
    DuplicateActiveEncounter,
    InvalidTransition,
    InvalidVitals,
    NotFoundError,
    ResourceOccupied,
    ValidationError,
)
from encounter_src.models import (
    Department,
    EncounterStatus,
    EncounterType,
    InvoiceStatus,
    RoutingEntryStatus,
    RoutingStatus,
    StaffRole,
)
from encounter_src.service import ClinicService


def unread_types(clinic, user_id, encounter_id=None):
    return [
        alert.alert_type for alert in clinic.list_unread(user_id)
        if encounter_id is None or alert.encounter_id == encounter_id
    ]


class TestCheckIn:
    """Tests for check_in."""

    def test_creates_encounter(self, clinic):
        encounter = clinic.check_in("pat-1", chief_complaint="Cough", receptionist_id="desk-1")

        assert encounter.status == EncounterStatus.CHECKED_IN
        assert encounter.routing_status == RoutingStatus.NONE
        assert encounter.encounter_number == "ENC20240603-0001"
        assert encounter.clinic == "main"
        assert encounter.physician_id == "doc-1"
        assert encounter.triage_time is not None

    def test_books_appointment_and_draft_invoice(self, clinic):
        encounter = clinic.check_in("pat-1")

        appointment = clinic.encounters.appointment_for(encounter.id)
        assert appointment["provider_id"] == "doc-1"
        assert appointment["status"] == "scheduled"

        invoice = clinic.get_invoice(encounter.id)
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.invoice_number == "INV000001"
        assert invoice.total == 75.0

    def test_notifies_nurses(self, clinic):
        encounter = clinic.check_in("pat-1", chief_complaint="Cough")

        alerts = clinic.list_unread("nurse-1")

        assert [a.alert_type for a in alerts] == [AlertType.PATIENT_CHECKED_IN]
        assert alerts[0].encounter_id == encounter.id
        assert "Jane Doe" in alerts[0].message

    def test_duplicate_active_encounter(self, clinic):
        first = clinic.check_in("pat-1")

        with pytest.raises(DuplicateActiveEncounter) as exc_info:
            clinic.check_in("pat-1")

        assert exc_info.value.encounter_id == first.id
        assert len(clinic.encounters.active_encounters()) == 1

    def test_check_in_again_after_cancel(self, clinic):
        first = clinic.check_in("pat-1")
        clinic.cancel_encounter(first.id, reason="Left")

        second = clinic.check_in("pat-1")

        assert second.id != first.id
        assert second.encounter_number == "ENC20240603-0002"

    def test_check_in_next_day(self, clinic, clock):
        first = clinic.check_in("pat-1")
        clock.advance(24 * 60)

        second = clinic.check_in("pat-1")

        assert second.id != first.id
        assert second.encounter_number == "ENC20240604-0001"

    def test_unknown_patient(self, clinic):
        with pytest.raises(NotFoundError):
            clinic.check_in("pat-404")

    def test_busy_physician_not_double_booked(self, clinic):
        clinic.check_in("pat-1")
        second = clinic.check_in("pat-2")

        assert second.physician_id is None
        assert clinic.encounters.appointment_for(second.id) is None

    def test_emergency_consultation_fee(self, clinic):
        encounter = clinic.check_in("pat-1", encounter_type=EncounterType.EMERGENCY)
        assert clinic.get_invoice(encounter.id).total == 150.0


class TestRooming:
    """Tests for assign_resource and release_resource."""

    def test_assign_moves_to_in_progress(self, roomed, clinic):
        assert roomed.status == EncounterStatus.IN_PROGRESS
        assert roomed.resource_id == "room-1"
        assert clinic.resources.get_resource("room-1").encounter_id == roomed.id

    def test_same_resource_is_noop(self, roomed, clinic):
        again = clinic.assign_resource(roomed.id, "room-1")
        assert again.resource_id == "room-1"
        assert again.status == EncounterStatus.IN_PROGRESS

    def test_move_releases_previous(self, roomed, clinic):
        moved = clinic.assign_resource(roomed.id, "bed-1")

        assert moved.resource_id == "bed-1"
        assert clinic.resources.get_resource("room-1").is_available is True
        assert clinic.resources.get_resource("bed-1").is_available is False

    def test_occupied_room_rejected(self, roomed, clinic):
        other = clinic.check_in("pat-2")

        with pytest.raises(ResourceOccupied) as exc_info:
            clinic.assign_resource(other.id, "room-1")

        assert exc_info.value.occupant_encounter_id == roomed.id
        assert clinic.get_encounter(other.id).status == EncounterStatus.CHECKED_IN

        clinic.release_resource(roomed.id)
        moved_in = clinic.assign_resource(other.id, "room-1")

        assert moved_in.resource_id == "room-1"
        assert moved_in.status == EncounterStatus.IN_PROGRESS
        assert clinic.resources.get_resource("room-1").encounter_id == other.id

    def test_failed_move_keeps_old_room(self, roomed, clinic):
        other = clinic.check_in("pat-2")
        clinic.assign_resource(other.id, "room-2")

        with pytest.raises(ResourceOccupied):
            clinic.assign_resource(roomed.id, "room-2")

        assert clinic.resources.get_resource("room-1").encounter_id == roomed.id

    def test_release_resource(self, roomed, clinic):
        released = clinic.release_resource(roomed.id)

        assert released.resource_id is None
        assert released.status == EncounterStatus.IN_PROGRESS
        assert clinic.resources.get_resource("room-1").is_available is True

    def test_cannot_room_finished_encounter(self, roomed, clinic):
        clinic.finish_and_release(roomed.id)

        with pytest.raises(ConflictError):
            clinic.assign_resource(roomed.id, "room-2")


class TestNursing:
    """Tests for nurse assignment and vitals."""

    def test_assign_nurse_alerts_nurse(self, roomed, clinic):
        clinic.mark_read("nurse-1")

        encounter = clinic.assign_nurse(roomed.id, "nurse-1", actor="desk-1")

        assert encounter.nurse_id == "nurse-1"
        assert unread_types(clinic, "nurse-1") == [AlertType.PATIENT_ASSIGNED]

    def test_assign_non_nurse_rejected(self, roomed, clinic):
        with pytest.raises(ValidationError):
            clinic.assign_nurse(roomed.id, "doc-1")

    def test_start_nurse_work(self, roomed, clinic):
        encounter = clinic.start_nurse_work(roomed.id, nurse_id="nurse-1")

        assert encounter.status == EncounterStatus.WITH_NURSE
        assert encounter.nurse_id == "nurse-1"
        assert encounter.nurse_started_at is not None

    def test_normal_vitals_stored(self, roomed, clinic):
        result = clinic.record_vitals(
            roomed.id, {"heart_rate": 72, "temperature": 98.6}, recorded_by="nurse-1"
        )

        assert result["critical"] == {}
        assert result["encounter"]["vital_signs"]["heart_rate"] == 72
        assert AlertType.VITALS_CRITICAL not in unread_types(clinic, "doc-1")

        history = clinic.vitals_history(roomed.id)
        assert len(history) == 1
        assert history[0].recorded_by == "nurse-1"

    def test_critical_vitals_alert_physician(self, roomed, clinic):
        result = clinic.record_vitals(roomed.id, {"temperature": 106}, recorded_by="nurse-1")

        assert result["critical"] == {"temperature": 106}
        assert unread_types(clinic, "doc-1") == [AlertType.VITALS_CRITICAL]
        assert clinic.vitals_history(roomed.id)[0].critical == {"temperature": 106}

    def test_critical_vitals_without_physician_go_to_all_doctors(self, clinic):
        clinic.db.add_staff("Dr. Brown", StaffRole.DOCTOR, staff_id="doc-2")
        clinic.check_in("pat-1")
        clinic.check_in("pat-2")
        # Both doctors now hold the 09:00 slot
        third_patient = clinic.db.add_patient("Sam Poe", patient_id="pat-3")
        encounter = clinic.check_in(third_patient.id)
        assert encounter.physician_id is None

        clinic.record_vitals(encounter.id, {"oxygen_saturation": 85})

        assert AlertType.VITALS_CRITICAL in unread_types(clinic, "doc-1", encounter.id)
        assert AlertType.VITALS_CRITICAL in unread_types(clinic, "doc-2", encounter.id)

    def test_invalid_vitals_store_nothing(self, roomed, clinic):
        with pytest.raises(InvalidVitals) as exc_info:
            clinic.record_vitals(roomed.id, {"heart_rate": 400})

        assert "heart_rate" in exc_info.value.errors
        assert clinic.vitals_history(roomed.id) == []
        assert clinic.get_encounter(roomed.id).vital_signs is None

    def test_vitals_on_cancelled_encounter(self, roomed, clinic):
        clinic.cancel_encounter(roomed.id)
        with pytest.raises(ConflictError):
            clinic.record_vitals(roomed.id, {"heart_rate": 72})


class TestPhysicianHandoff:
    """Tests for alert_physician and the doctor's work."""

    def test_alert_physician(self, roomed, clinic):
        encounter = clinic.alert_physician(roomed.id, nurse_id="nurse-1")

        assert encounter.status == EncounterStatus.READY_FOR_DOCTOR
        assert encounter.nurse_id == "nurse-1"
        assert unread_types(clinic, "doc-1") == [AlertType.PATIENT_READY]

    def test_alert_again_resends_without_transition(self, roomed, clinic):
        clinic.alert_physician(roomed.id, nurse_id="nurse-1")
        encounter = clinic.alert_physician(roomed.id, nurse_id="nurse-1", message="Still waiting")

        assert encounter.status == EncounterStatus.READY_FOR_DOCTOR
        alerts = clinic.list_unread("doc-1")
        assert len(alerts) == 2
        assert any(a.message == "Still waiting" for a in alerts)

    def test_alert_binds_physician_when_unassigned(self, clinic):
        clinic.check_in("pat-1")
        second = clinic.check_in("pat-2")
        assert second.physician_id is None

        clinic.assign_resource(second.id, "room-2")
        encounter = clinic.alert_physician(second.id)

        assert encounter.physician_id == "doc-1"

    def test_alert_without_any_physician(self, tmp_path, clock):
        service = ClinicService(db_path=str(tmp_path / "empty.db"), now_fn=clock)
        service.db.add_patient("Jane Doe", patient_id="pat-1")
        encounter = service.check_in("pat-1")

        with pytest.raises(ConflictError):
            service.alert_physician(encounter.id)

        assert service.get_encounter(encounter.id).status == EncounterStatus.CHECKED_IN

    def test_doctor_round_trip(self, roomed, clinic):
        clinic.assign_nurse(roomed.id, "nurse-1")
        clinic.alert_physician(roomed.id, nurse_id="nurse-1")
        started = clinic.start_physician_work(roomed.id, physician_id="doc-1")
        assert started.status == EncounterStatus.WITH_DOCTOR
        assert started.doctor_started_at is not None

        clinic.mark_read("nurse-1")
        done = clinic.complete_physician_work(roomed.id, physician_id="doc-1")

        assert done.status == EncounterStatus.WITH_NURSE
        assert done.doctor_completed_at is not None
        assert unread_types(clinic, "nurse-1") == [AlertType.PHYSICIAN_COMPLETE]

    def test_physician_cannot_start_from_checked_in(self, clinic):
        encounter = clinic.check_in("pat-1")

        with pytest.raises(InvalidTransition) as exc_info:
            clinic.start_physician_work(encounter.id)

        assert exc_info.value.current == "checked_in"
        assert exc_info.value.requested == "with_doctor"


class TestFinishAndCheckout:
    """Tests for finish_and_release, checkout and cancel_encounter."""

    def test_finish_completes_and_bills(self, roomed, clinic):
        result = clinic.finish_and_release(roomed.id, actor="doc-1")

        assert result["encounter"].status == EncounterStatus.COMPLETED
        assert result["encounter"].resource_id is None
        assert result["encounter"].completed_at is not None
        assert result["invoice"].status == InvoiceStatus.PENDING
        assert clinic.resources.get_resource("room-1").is_available is True
        assert unread_types(clinic, "desk-1") == [AlertType.READY_FOR_CHECKOUT]

    def test_release_only_keeps_status(self, roomed, clinic):
        result = clinic.finish_and_release(roomed.id, release_only=True)

        assert result["invoice"] is None
        assert result["encounter"].status == EncounterStatus.IN_PROGRESS
        assert clinic.resources.get_resource("room-1").is_available is True

    def test_checkout_discharges_and_clears_alerts(self, roomed, clinic):
        clinic.alert_physician(roomed.id, nurse_id="nurse-1")
        clinic.finish_and_release(roomed.id)

        encounter = clinic.checkout(roomed.id, receptionist_id="desk-1")

        assert encounter.status == EncounterStatus.DISCHARGED
        assert encounter.discharged_at is not None
        for user in ("doc-1", "nurse-1", "desk-1"):
            assert unread_types(clinic, user, roomed.id) == []

    def test_checkout_requires_completed(self, roomed, clinic):
        with pytest.raises(InvalidTransition):
            clinic.checkout(roomed.id)

    def test_cancel_cleans_up(self, roomed, clinic):
        entry = clinic.route(roomed.id, Department.LAB)

        encounter = clinic.cancel_encounter(roomed.id, reason="Patient left", actor="desk-1")

        assert encounter.status == EncounterStatus.CANCELLED
        assert encounter.cancel_reason == "Patient left"
        assert encounter.resource_id is None
        assert clinic.resources.get_resource("room-1").is_available is True
        assert clinic.router.get_entry(entry.id).status == RoutingEntryStatus.CANCELLED
        assert clinic.get_invoice(roomed.id).status == InvoiceStatus.CANCELLED
        assert clinic.encounters.appointment_for(roomed.id)["status"] == "cancelled"

    def test_cannot_cancel_discharged(self, roomed, clinic):
        clinic.finish_and_release(roomed.id)
        clinic.checkout(roomed.id)

        with pytest.raises(InvalidTransition):
            clinic.cancel_encounter(roomed.id)

    def test_actions_are_audited(self, roomed, clinic):
        actions = [e.action for e in clinic.audit_entries("encounter", roomed.id)]
        assert actions == ["check_in", "assign_resource"]


class TestPatientQueue:
    """Tests for get_patient_queue."""

    def test_queue_items(self, roomed, clinic, clock):
        clock.advance(1)
        waiting = clinic.check_in("pat-2")
        clock.advance(30)

        queue = clinic.get_patient_queue()

        assert [item["id"] for item in queue] == [roomed.id, waiting.id]
        first = queue[0]
        assert first["patient_name"] == "Jane Doe"
        assert first["room"] == "Room 1"
        assert first["workflow_status"] == "roomed"
        assert first["triage_priority"] == "red"
        assert first["minutes_waiting"] == 31.0
        assert queue[1]["workflow_status"] == "waiting_for_room"

    def test_queue_reflects_routing_and_orders(self, roomed, clinic):
        clinic.route(roomed.id, Department.LAB)
        clinic.place_order(roomed.id, Department.LAB, "CBC")

        item = clinic.get_patient_queue()[0]

        assert item["workflow_status"] == "in_lab"
        assert item["pending_orders"]["lab"] == 1
        assert len(item["active_routing"]) == 1

    def test_finished_encounters_hidden_by_default(self, roomed, clinic):
        clinic.cancel_encounter(roomed.id)

        assert clinic.get_patient_queue() == []
        finished = clinic.get_patient_queue(include_finished=True)
        assert finished[0]["workflow_status"] == "cancelled"

    def test_filter_by_clinic(self, clinic):
        clinic.check_in("pat-1", clinic="north")
        clinic.check_in("pat-2", clinic="south")

        queue = clinic.get_patient_queue(clinic="north")

        assert [item["patient_id"] for item in queue] == ["pat-1"]
