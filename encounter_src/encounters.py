"""Encounter state machine.

Owns the lifecycle of a visit from check-in to discharge and coordinates the
other components at each step: rooms and beds, department routing, billing
and staff alerts. Each operation is one transaction; alerts and audit
entries are queued in the outbox and delivered after commit.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from common.alert_store import AlertType

from .assignment import AssignmentStrategy, FirstAvailableStrategy
from .audit import AuditLog
from .billing import BillingService
from .config import config
from .database import ClinicDatabase, fetch_encounter, generate_id
from .errors import (
    ConflictError,
    DuplicateActiveEncounter,
    InvalidTransition,
    InvalidVitals,
    NotFoundError,
    ValidationError,
)
from .models import (
    ENCOUNTER_TRANSITIONS,
    Encounter,
    EncounterStatus,
    EncounterType,
    StaffRole,
    VitalSignsRecord,
)
from .notifications import NotificationService
from .resources import ResourceRegistry
from .router import DepartmentRouter
from .vitals import validate_vitals

logger = logging.getLogger(__name__)

# Timestamp column stamped on entry to a status
STATUS_TIMESTAMPS = {
    EncounterStatus.COMPLETED: "completed_at",
    EncounterStatus.DISCHARGED: "discharged_at",
    EncounterStatus.CANCELLED: "cancelled_at",
}

ENCOUNTER_FIELDS = frozenset({
    "status", "routing_status", "physician_id", "nurse_id", "receptionist_id",
    "resource_id", "nurse_started_at", "doctor_started_at", "doctor_completed_at",
    "completed_at", "discharged_at", "cancelled_at", "cancel_reason",
    "vital_signs", "vitals_recorded_at",
})


class EncounterService:
    """Drives encounters through check-in, care, completion and checkout."""

    def __init__(
        self,
        db: ClinicDatabase,
        resources: ResourceRegistry,
        router: DepartmentRouter,
        notifications: NotificationService,
        billing: BillingService,
        audit: AuditLog,
        assignment: AssignmentStrategy | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.resources = resources
        self.router = router
        self.notifications = notifications
        self.billing = billing
        self.audit = audit
        self.assignment = assignment or FirstAvailableStrategy(db)
        self.now_fn = now_fn

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def get_encounter(self, encounter_id: str, conn: sqlite3.Connection | None = None) -> Encounter:
        with self.db.read(conn) as read_conn:
            return fetch_encounter(read_conn, encounter_id)

    def _update(self, conn: sqlite3.Connection, encounter_id: str, **fields: Any) -> None:
        unknown = set(fields) - ENCOUNTER_FIELDS
        if unknown:
            raise ValueError(f"Unknown encounter fields: {sorted(unknown)}")

        values = []
        for value in fields.values():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif hasattr(value, "value"):
                value = value.value
            values.append(value)

        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn.execute(
            f"UPDATE encounters SET {assignments}, updated_at = ? WHERE id = ?",
            values + [self.now_fn().isoformat(), encounter_id]
        )

    def _transition(
        self,
        conn: sqlite3.Connection,
        encounter: Encounter,
        new_status: EncounterStatus,
        **fields: Any,
    ) -> Encounter:
        """Apply an allowed status change plus any extra field updates."""
        if new_status not in ENCOUNTER_TRANSITIONS[encounter.status]:
            logger.info(
                f"Rejected encounter {encounter.id} transition "
                f"{encounter.status.value} -> {new_status.value}"
            )
            raise InvalidTransition(
                "encounter", encounter.id, encounter.status.value, new_status.value
            )

        stamp = STATUS_TIMESTAMPS.get(new_status)
        if stamp and stamp not in fields:
            fields[stamp] = self.now_fn()
        self._update(conn, encounter.id, status=new_status, **fields)
        return fetch_encounter(conn, encounter.id)

    def _require_active(self, encounter: Encounter, action: str) -> None:
        if encounter.status.is_terminal:
            logger.info(f"Cannot {action} encounter {encounter.id}: {encounter.status.value}")
            raise ConflictError(
                f"Cannot {action} encounter {encounter.id}: it is {encounter.status.value}"
            )

    def _require_staff(self, conn: sqlite3.Connection, staff_id: str, role: StaffRole) -> None:
        row = conn.execute(
            "SELECT role, is_active FROM staff WHERE id = ?", (staff_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("staff", staff_id)
        if row["role"] != role.value or not row["is_active"]:
            raise ValidationError(
                f"Staff {staff_id} is not an active {role.value}",
                {"staff_id": f"Must be an active {role.value}"},
            )

    def _notify_nurse(
        self,
        conn: sqlite3.Connection,
        encounter: Encounter,
        alert_type: AlertType,
        message: str,
        sender_id: str | None = None,
    ) -> None:
        """Alert the assigned nurse, or every active nurse when none is assigned."""
        if encounter.nurse_id:
            self.notifications.queue_alert(
                conn, alert_type, encounter.nurse_id, message,
                encounter_id=encounter.id, patient_id=encounter.patient_id,
                sender_id=sender_id,
            )
        else:
            self.notifications.queue_role_alert(
                conn, StaffRole.NURSE, alert_type, message,
                encounter_id=encounter.id, patient_id=encounter.patient_id,
                sender_id=sender_id,
            )

    # -------------------------------------------------------------------------
    # Check-in
    # -------------------------------------------------------------------------

    def check_in(
        self,
        patient_id: str,
        chief_complaint: str | None = None,
        clinic: str | None = None,
        encounter_type: EncounterType = EncounterType.WALK_IN,
        receptionist_id: str | None = None,
    ) -> Encounter:
        """Open an encounter for a patient arriving today.

        Also books an implicit appointment slot with the first free physician,
        opens a draft invoice and tells the nurses a patient is waiting.

        Raises:
            DuplicateActiveEncounter: the patient already has an open
                encounter today
        """
        now = self.now_fn()
        today = now.date()

        with self.db.transaction() as tx:
            patient = tx.execute(
                "SELECT id, name FROM patients WHERE id = ?", (patient_id,)
            ).fetchone()
            if not patient:
                raise NotFoundError("patient", patient_id)

            seq = tx.execute(
                "SELECT COUNT(*) FROM encounters WHERE encounter_date = ?",
                (today.isoformat(),)
            ).fetchone()[0] + 1
            encounter_id = generate_id()
            encounter_number = f"ENC{today:%Y%m%d}-{seq:04d}"

            try:
                tx.execute(
                    """
                    INSERT INTO encounters (
                        id, encounter_number, patient_id, status, routing_status,
                        encounter_type, chief_complaint, clinic, encounter_date,
                        receptionist_id, triage_time, checked_in_at, updated_at
                    ) VALUES (?, ?, ?, 'checked_in', 'none', ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        encounter_id, encounter_number, patient_id,
                        encounter_type.value, chief_complaint,
                        clinic or config.DEFAULT_CLINIC, today.isoformat(),
                        receptionist_id, now.isoformat(), now.isoformat(), now.isoformat(),
                    )
                )
            except sqlite3.IntegrityError:
                existing = tx.execute(
                    """
                    SELECT id FROM encounters
                    WHERE patient_id = ? AND encounter_date = ?
                      AND status NOT IN ('discharged', 'cancelled')
                    """,
                    (patient_id, today.isoformat())
                ).fetchone()
                if existing is None:
                    raise
                logger.info(
                    f"Check-in refused: patient {patient_id} already has "
                    f"encounter {existing['id']} today"
                )
                raise DuplicateActiveEncounter(existing["id"], patient_id) from None

            physician = self.assignment.select(
                tx, StaffRole.DOCTOR, start=now, duration_minutes=config.APPOINTMENT_SLOT_MINUTES
            )
            if physician:
                tx.execute(
                    """
                    INSERT INTO appointments (
                        id, provider_id, patient_id, encounter_id, start_time,
                        duration_minutes, status
                    ) VALUES (?, ?, ?, ?, ?, ?, 'scheduled')
                    """,
                    (
                        generate_id(), physician.id, patient_id, encounter_id,
                        now.isoformat(), config.APPOINTMENT_SLOT_MINUTES,
                    )
                )
                self._update(tx, encounter_id, physician_id=physician.id)

            encounter = fetch_encounter(tx, encounter_id)
            self.billing.create_draft_invoice(tx, encounter)

            self.notifications.queue_role_alert(
                tx, StaffRole.NURSE, AlertType.PATIENT_CHECKED_IN,
                f"{patient['name']} checked in ({encounter_number})"
                + (f": {chief_complaint}" if chief_complaint else ""),
                encounter_id=encounter_id, patient_id=patient_id,
                sender_id=receptionist_id,
            )
            self.audit.record(
                tx, receptionist_id, "check_in", "encounter", encounter_id,
                after=encounter.to_dict(),
            )

        logger.info(
            f"Checked in patient {patient_id} as {encounter_number}"
            + (f", physician {physician.id}" if physician else ", no physician free")
        )
        return encounter

    # -------------------------------------------------------------------------
    # Rooms and beds
    # -------------------------------------------------------------------------

    def assign_resource(
        self,
        encounter_id: str,
        resource_id: str,
        assigned_by: str | None = None,
    ) -> Encounter:
        """Move the encounter into a room or bed, freeing any it held before.

        Raises:
            ResourceOccupied: the resource belongs to another encounter
        """
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            self._require_active(encounter, "room")
            if encounter.status == EncounterStatus.COMPLETED:
                raise ConflictError(f"Encounter {encounter_id} is completed")

            current = self.resources.resource_for_encounter(encounter_id, conn=tx)
            if current and current.id == resource_id:
                return encounter

            before = encounter.to_dict()
            if current:
                self.resources.release(current.id, conn=tx)
            self.resources.try_reserve(
                resource_id, encounter_id, encounter.patient_id,
                assigned_by=assigned_by, conn=tx,
            )

            if encounter.status == EncounterStatus.CHECKED_IN:
                encounter = self._transition(
                    tx, encounter, EncounterStatus.IN_PROGRESS, resource_id=resource_id
                )
            else:
                self._update(tx, encounter_id, resource_id=resource_id)
                encounter = fetch_encounter(tx, encounter_id)

            self.audit.record(
                tx, assigned_by, "assign_resource", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(f"Encounter {encounter_id} assigned resource {resource_id}")
        return encounter

    def release_resource(self, encounter_id: str, actor: str | None = None) -> Encounter:
        """Free the encounter's room or bed. Nothing bound is not an error."""
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            released = self.resources.release_for_encounter(encounter_id, conn=tx)
            if released or encounter.resource_id:
                self._update(tx, encounter_id, resource_id=None)
                self.audit.record(
                    tx, actor, "release_resource", "encounter", encounter_id,
                    before={"resource_id": released or encounter.resource_id},
                    after={"resource_id": None},
                )
            encounter = fetch_encounter(tx, encounter_id)
        return encounter

    # -------------------------------------------------------------------------
    # Nursing
    # -------------------------------------------------------------------------

    def assign_nurse(
        self,
        encounter_id: str,
        nurse_id: str,
        actor: str | None = None,
    ) -> Encounter:
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            self._require_active(encounter, "assign a nurse to")
            self._require_staff(tx, nurse_id, StaffRole.NURSE)

            self._update(tx, encounter_id, nurse_id=nurse_id)
            self.notifications.queue_alert(
                tx, AlertType.PATIENT_ASSIGNED, nurse_id,
                f"You have been assigned to encounter {encounter.encounter_number}",
                encounter_id=encounter_id, patient_id=encounter.patient_id,
                sender_id=actor,
            )
            self.audit.record(
                tx, actor, "assign_nurse", "encounter", encounter_id,
                before={"nurse_id": encounter.nurse_id}, after={"nurse_id": nurse_id},
            )
            encounter = fetch_encounter(tx, encounter_id)
        return encounter

    def start_nurse_work(self, encounter_id: str, nurse_id: str | None = None) -> Encounter:
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            fields: dict[str, Any] = {}
            if nurse_id:
                self._require_staff(tx, nurse_id, StaffRole.NURSE)
                fields["nurse_id"] = nurse_id
            if encounter.nurse_started_at is None:
                fields["nurse_started_at"] = self.now_fn()

            before = encounter.to_dict()
            encounter = self._transition(tx, encounter, EncounterStatus.WITH_NURSE, **fields)
            self.audit.record(
                tx, nurse_id, "start_nurse_work", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )
        return encounter

    def record_vitals(
        self,
        encounter_id: str,
        vitals: dict[str, Any],
        recorded_by: str | None = None,
    ) -> dict[str, Any]:
        """Validate and store a vitals reading.

        Implausible values are rejected before anything is written. Plausible
        values in a critical band are stored and the physician is alerted.

        Raises:
            InvalidVitals: with field-level errors
        """
        try:
            checked = validate_vitals(vitals)
        except InvalidVitals as e:
            logger.info(f"Rejected vitals for encounter {encounter_id}: {e.errors}")
            raise

        now = self.now_fn()
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            self._require_active(encounter, "record vitals for")

            self._update(
                tx, encounter_id,
                vital_signs=json.dumps(checked["values"]),
                vitals_recorded_at=now,
            )
            tx.execute(
                """
                INSERT INTO vital_signs_history (
                    encounter_id, patient_id, recorded_at, recorded_by,
                    vital_signs, critical_values
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    encounter_id, encounter.patient_id, now.isoformat(), recorded_by,
                    json.dumps(checked["values"]),
                    json.dumps(checked["critical"]) if checked["critical"] else None,
                )
            )

            if checked["critical"]:
                summary = ", ".join(
                    f"{name.replace('_', ' ')} {value:g}"
                    for name, value in checked["critical"].items()
                )
                message = f"Critical vitals for {encounter.encounter_number}: {summary}"
                if encounter.physician_id:
                    self.notifications.queue_alert(
                        tx, AlertType.VITALS_CRITICAL, encounter.physician_id, message,
                        encounter_id=encounter_id, patient_id=encounter.patient_id,
                        sender_id=recorded_by,
                    )
                else:
                    self.notifications.queue_role_alert(
                        tx, StaffRole.DOCTOR, AlertType.VITALS_CRITICAL, message,
                        encounter_id=encounter_id, patient_id=encounter.patient_id,
                        sender_id=recorded_by,
                    )

            self.audit.record(
                tx, recorded_by, "record_vitals", "encounter", encounter_id,
                before={"vital_signs": encounter.vital_signs},
                after={"vital_signs": checked["values"]},
            )
            encounter = fetch_encounter(tx, encounter_id)

        if checked["critical"]:
            logger.warning(
                f"Critical vitals on encounter {encounter_id}: {checked['critical']}"
            )
        return {
            "encounter": encounter.to_dict(),
            "critical": checked["critical"],
            "warnings": checked["warnings"],
        }

    def vitals_history(self, encounter_id: str) -> list[VitalSignsRecord]:
        with self.db.connection() as conn:
            fetch_encounter(conn, encounter_id)
            rows = conn.execute(
                """
                SELECT * FROM vital_signs_history
                WHERE encounter_id = ?
                ORDER BY recorded_at, id
                """,
                (encounter_id,)
            ).fetchall()
        return [VitalSignsRecord.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Physician hand-off
    # -------------------------------------------------------------------------

    def alert_physician(
        self,
        encounter_id: str,
        nurse_id: str | None = None,
        message: str | None = None,
    ) -> Encounter:
        """Hand the patient to the doctor.

        Binds a physician through the assignment strategy when none is
        assigned yet. Alerting again while already waiting for the doctor
        re-sends the alert without changing status.
        """
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            before = encounter.to_dict()
            fields: dict[str, Any] = {}

            physician_id = encounter.physician_id
            if physician_id is None:
                physician = self.assignment.select(tx, StaffRole.DOCTOR)
                if physician is None:
                    raise ConflictError("No active physician available")
                physician_id = physician.id
                fields["physician_id"] = physician_id
            if nurse_id and encounter.nurse_id is None:
                fields["nurse_id"] = nurse_id

            if encounter.status == EncounterStatus.READY_FOR_DOCTOR:
                if fields:
                    self._update(tx, encounter_id, **fields)
                encounter = fetch_encounter(tx, encounter_id)
            else:
                encounter = self._transition(
                    tx, encounter, EncounterStatus.READY_FOR_DOCTOR, **fields
                )

            self.notifications.queue_alert(
                tx, AlertType.PATIENT_READY, physician_id,
                message or f"Patient {encounter.encounter_number} is ready for you",
                encounter_id=encounter_id, patient_id=encounter.patient_id,
                sender_id=nurse_id,
            )
            self.audit.record(
                tx, nurse_id, "alert_physician", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(f"Encounter {encounter_id} ready for physician {physician_id}")
        return encounter

    def start_physician_work(self, encounter_id: str, physician_id: str | None = None) -> Encounter:
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            fields: dict[str, Any] = {}
            if physician_id:
                self._require_staff(tx, physician_id, StaffRole.DOCTOR)
                fields["physician_id"] = physician_id
            if encounter.doctor_started_at is None:
                fields["doctor_started_at"] = self.now_fn()

            before = encounter.to_dict()
            encounter = self._transition(tx, encounter, EncounterStatus.WITH_DOCTOR, **fields)
            self.audit.record(
                tx, physician_id, "start_physician_work", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )
        return encounter

    def complete_physician_work(self, encounter_id: str, physician_id: str | None = None) -> Encounter:
        """Doctor is done; the patient goes back to the nurse."""
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            before = encounter.to_dict()
            encounter = self._transition(
                tx, encounter, EncounterStatus.WITH_NURSE,
                doctor_completed_at=self.now_fn(),
            )
            self._notify_nurse(
                tx, encounter, AlertType.PHYSICIAN_COMPLETE,
                f"Doctor has finished with {encounter.encounter_number}",
                sender_id=physician_id or encounter.physician_id,
            )
            self.audit.record(
                tx, physician_id, "complete_physician_work", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(f"Physician finished encounter {encounter_id}")
        return encounter

    # -------------------------------------------------------------------------
    # Completion and checkout
    # -------------------------------------------------------------------------

    def finish_and_release(
        self,
        encounter_id: str,
        release_only: bool = False,
        actor: str | None = None,
    ) -> dict[str, Any]:
        """Free the room and, unless release_only, complete and bill the encounter.

        Returns:
            Dict with the encounter and, when completed, its invoice
        """
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            before = encounter.to_dict()

            released = self.resources.release_for_encounter(encounter_id, conn=tx)
            if released or encounter.resource_id:
                self._update(tx, encounter_id, resource_id=None)

            if release_only:
                encounter = fetch_encounter(tx, encounter_id)
                self.audit.record(
                    tx, actor, "release_resource", "encounter", encounter_id,
                    before={"resource_id": before["resource_id"]},
                    after={"resource_id": None},
                )
                return {"encounter": encounter, "invoice": None}

            encounter = self._transition(
                tx, fetch_encounter(tx, encounter_id), EncounterStatus.COMPLETED
            )
            invoice = self.billing.generate_invoice(encounter_id, actor=actor, conn=tx)

            self.notifications.queue_role_alert(
                tx, StaffRole.RECEPTIONIST, AlertType.READY_FOR_CHECKOUT,
                f"Encounter {encounter.encounter_number} is ready for checkout "
                f"(invoice {invoice.invoice_number}, {invoice.total:.2f})",
                encounter_id=encounter_id, patient_id=encounter.patient_id,
                sender_id=actor,
            )
            self.audit.record(
                tx, actor, "finish_encounter", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(f"Encounter {encounter_id} completed; invoice {invoice.invoice_number}")
        return {"encounter": encounter, "invoice": invoice}

    def checkout(self, encounter_id: str, receptionist_id: str | None = None) -> Encounter:
        """Discharge a completed encounter and clear its alerts."""
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            before = encounter.to_dict()
            fields: dict[str, Any] = {}
            if receptionist_id and not encounter.receptionist_id:
                fields["receptionist_id"] = receptionist_id
            encounter = self._transition(tx, encounter, EncounterStatus.DISCHARGED, **fields)

            self.notifications.queue_mark_encounter_read(
                tx, encounter_id, performed_by=receptionist_id
            )
            self.audit.record(
                tx, receptionist_id, "checkout", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(f"Encounter {encounter_id} discharged")
        return encounter

    def cancel_encounter(
        self,
        encounter_id: str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Encounter:
        """Cancel before completion: frees the room and cancels open routing."""
        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            before = encounter.to_dict()

            released = self.resources.release_for_encounter(encounter_id, conn=tx)
            encounter = self._transition(
                tx, encounter, EncounterStatus.CANCELLED,
                cancel_reason=reason,
                resource_id=None,
            )
            cancelled_routes = self.router.cancel_open_entries(tx, encounter_id, reason)
            tx.execute(
                "UPDATE invoices SET status = 'cancelled', updated_at = ? "
                "WHERE encounter_id = ? AND status = 'draft'",
                (self.now_fn().isoformat(), encounter_id)
            )
            tx.execute(
                "UPDATE appointments SET status = 'cancelled' "
                "WHERE encounter_id = ? AND status = 'scheduled'",
                (encounter_id,)
            )
            encounter = fetch_encounter(tx, encounter_id)
            self.audit.record(
                tx, actor, "cancel_encounter", "encounter", encounter_id,
                before=before, after=encounter.to_dict(),
            )

        logger.info(
            f"Encounter {encounter_id} cancelled ({reason}); released {released}, "
            f"cancelled {cancelled_routes} routing entr{'y' if cancelled_routes == 1 else 'ies'}"
        )
        return encounter

    def appointment_for(self, encounter_id: str) -> dict[str, Any] | None:
        """The implicit appointment booked at check-in, if any."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM appointments WHERE encounter_id = ?", (encounter_id,)
            ).fetchone()
        return dict(row) if row else None

    def active_encounters(self, clinic: str | None = None) -> list[Encounter]:
        query = "SELECT * FROM encounters WHERE status NOT IN ('discharged', 'cancelled')"
        params: list[Any] = []
        if clinic:
            query += " AND clinic = ?"
            params.append(clinic)
        query += " ORDER BY triage_time"
        with self.db.connection() as conn:
            return [Encounter.from_row(row) for row in conn.execute(query, params)]
