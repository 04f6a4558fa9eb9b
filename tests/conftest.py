"""Shared fixtures: a clinic on a temporary database with a fixed clock."""

from datetime import datetime, timedelta

import pytest

from encounter_src.models import ResourceKind, StaffRole
from encounter_src.service import ClinicService


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 3, 9, 0))


@pytest.fixture
def clinic(tmp_path, clock):
    """Clinic service with one doctor, one nurse, one receptionist and rooms."""
    service = ClinicService(db_path=str(tmp_path / "clinic.db"), now_fn=clock)
    service.db.add_staff("Dr. Adams", StaffRole.DOCTOR, staff_id="doc-1")
    service.db.add_staff("Nurse Baker", StaffRole.NURSE, staff_id="nurse-1")
    service.db.add_staff("Front Desk", StaffRole.RECEPTIONIST, staff_id="desk-1")
    service.db.add_patient("Jane Doe", patient_number="P-001", patient_id="pat-1")
    service.db.add_patient("John Roe", patient_number="P-002", patient_id="pat-2")
    service.resources.add_resource(ResourceKind.ROOM, "Room 1", resource_id="room-1")
    service.resources.add_resource(ResourceKind.ROOM, "Room 2", resource_id="room-2")
    service.resources.add_resource(ResourceKind.BED, "Bed 1", resource_id="bed-1")
    return service


@pytest.fixture
def roomed(clinic):
    """An encounter for pat-1 checked in and placed in Room 1."""
    encounter = clinic.check_in("pat-1", chief_complaint="Cough")
    return clinic.assign_resource(encounter.id, "room-1", assigned_by="nurse-1")
