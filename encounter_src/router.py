"""Department routing: sending a patient to lab, imaging, pharmacy or the front desk.

Each routing entry has its own lifecycle. The encounter's routing_status is
an aggregate over its entries and is recomputed inside the same transaction
as every entry change.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from common.alert_store import AlertType

from .audit import AuditLog
from .database import ClinicDatabase, fetch_encounter, generate_id
from .errors import ConflictError, InvalidTransition, NotFoundError
from .models import (
    ROUTING_TRANSITIONS,
    Department,
    Priority,
    RoutingEntry,
    RoutingEntryStatus,
    RoutingStatus,
    StaffRole,
    parse_datetime,
)
from .notifications import NotificationService
from .queue_view import triage_priority

logger = logging.getLogger(__name__)

DEPARTMENT_NAMES = {
    Department.LAB: "Lab",
    Department.IMAGING: "Imaging",
    Department.PHARMACY: "Pharmacy",
    Department.RECEPTIONIST: "Front Desk",
}

PRIORITY_ORDER_SQL = "CASE r.priority WHEN 'stat' THEN 0 WHEN 'urgent' THEN 1 ELSE 2 END"


class DepartmentRouter:
    """Per-encounter routing entries aggregated back into the encounter."""

    def __init__(
        self,
        db: ClinicDatabase,
        notifications: NotificationService,
        audit: AuditLog,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.notifications = notifications
        self.audit = audit
        self.now_fn = now_fn

    def get_entry(self, entry_id: str, conn: sqlite3.Connection | None = None) -> RoutingEntry:
        with self.db.read(conn) as read_conn:
            row = read_conn.execute(
                "SELECT * FROM department_routing WHERE id = ?", (entry_id,)
            ).fetchone()
        if not row:
            raise NotFoundError("routing_entry", entry_id)
        return RoutingEntry.from_row(row)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def route(
        self,
        encounter_id: str,
        department: Department,
        priority: Priority = Priority.ROUTINE,
        notes: str | None = None,
        routed_by: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RoutingEntry:
        """Send an encounter to a department.

        Routing also clears the doctor's "patient ready" alerts for this
        encounter, since the patient has left the doctor's queue.
        """
        with self.db.write(conn) as tx:
            encounter = fetch_encounter(tx, encounter_id)
            if encounter.status.is_terminal:
                raise ConflictError(
                    f"Cannot route encounter {encounter_id}: it is {encounter.status.value}"
                )

            entry = RoutingEntry(
                id=generate_id(),
                encounter_id=encounter.id,
                patient_id=encounter.patient_id,
                department=department,
                priority=priority,
                routed_at=self.now_fn(),
                routed_by=routed_by,
                notes=notes,
            )
            tx.execute(
                """
                INSERT INTO department_routing (
                    id, encounter_id, patient_id, department, status, priority,
                    routed_at, routed_by, notes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id, entry.encounter_id, entry.patient_id,
                    entry.department.value, entry.status.value, entry.priority.value,
                    entry.routed_at.isoformat(), entry.routed_by, entry.notes,
                )
            )
            self._set_routing_status(tx, encounter_id, RoutingStatus.PENDING_ROUTING)

            self.notifications.queue_mark_encounter_read(
                tx, encounter_id, AlertType.PATIENT_READY, performed_by=routed_by
            )
            self.audit.record(
                tx, routed_by, "route", "routing_entry", entry.id,
                after=entry.to_dict(),
            )

        logger.info(
            f"Routed encounter {encounter_id} to {department.value} ({priority.value})"
        )
        return entry

    def advance_status(
        self,
        entry_id: str,
        new_status: RoutingEntryStatus,
        actor: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RoutingEntry:
        """Move an entry forward and recompute the encounter's routing_status."""
        with self.db.write(conn) as tx:
            entry = self.get_entry(entry_id, conn=tx)
            before = entry.to_dict()
            self._apply_status(tx, entry, new_status)
            self.recompute_routing_status(tx, entry.encounter_id)
            self.audit.record(
                tx, actor, f"routing_{new_status.value}", "routing_entry", entry.id,
                before=before, after=entry.to_dict(),
            )

        logger.info(f"Routing entry {entry_id} -> {new_status.value}")
        return entry

    def cancel(
        self,
        entry_id: str,
        reason: str | None = None,
        actor: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RoutingEntry:
        """Cancel an entry, recording the reason in its notes."""
        with self.db.write(conn) as tx:
            entry = self.get_entry(entry_id, conn=tx)
            before = entry.to_dict()
            self._cancel_entry(tx, entry, reason)
            self.recompute_routing_status(tx, entry.encounter_id)
            self.audit.record(
                tx, actor, "routing_cancelled", "routing_entry", entry.id,
                before=before, after=entry.to_dict(),
            )

        logger.info(f"Routing entry {entry_id} cancelled: {reason}")
        return entry

    def cancel_open_entries(
        self,
        conn: sqlite3.Connection,
        encounter_id: str,
        reason: str | None = None,
    ) -> int:
        """Cancel every pending or in-progress entry of an encounter."""
        rows = conn.execute(
            """
            SELECT * FROM department_routing
            WHERE encounter_id = ? AND status IN ('pending', 'in-progress')
            """,
            (encounter_id,)
        ).fetchall()
        for row in rows:
            self._cancel_entry(conn, RoutingEntry.from_row(row), reason)
        self.recompute_routing_status(conn, encounter_id)
        return len(rows)

    def auto_complete_on_orders_finished(
        self,
        encounter_id: str,
        department: Department,
        conn: sqlite3.Connection | None = None,
    ) -> list[RoutingEntry]:
        """Complete a department's routing once it has no open orders left.

        Called whenever an order reaches a terminal status. When the last open
        order for the department finishes, its open routing entries are
        completed and the nurse is told the patient is on the way back.

        Returns:
            The entries that were completed (empty when nothing changed)
        """
        with self.db.write(conn) as tx:
            remaining = tx.execute(
                """
                SELECT COUNT(*) FROM orders
                WHERE encounter_id = ? AND department = ?
                  AND status NOT IN ('completed', 'dispensed', 'cancelled')
                """,
                (encounter_id, department.value)
            ).fetchone()[0]
            if remaining:
                return []

            rows = tx.execute(
                """
                SELECT * FROM department_routing
                WHERE encounter_id = ? AND department = ?
                  AND status IN ('pending', 'in-progress')
                ORDER BY routed_at
                """,
                (encounter_id, department.value)
            ).fetchall()
            if not rows:
                return []

            completed = []
            for row in rows:
                entry = RoutingEntry.from_row(row)
                self._apply_status(tx, entry, RoutingEntryStatus.COMPLETED)
                completed.append(entry)
            self.recompute_routing_status(tx, encounter_id)

            encounter = fetch_encounter(tx, encounter_id)
            message = (
                f"Patient {encounter.encounter_number} is returning from "
                f"{DEPARTMENT_NAMES[department]}"
            )
            if encounter.nurse_id:
                self.notifications.queue_alert(
                    tx, AlertType.PATIENT_RETURNING, encounter.nurse_id, message,
                    encounter_id=encounter.id, patient_id=encounter.patient_id,
                )
            else:
                self.notifications.queue_role_alert(
                    tx, StaffRole.NURSE, AlertType.PATIENT_RETURNING, message,
                    encounter_id=encounter.id, patient_id=encounter.patient_id,
                )
            self.audit.record(
                tx, None, "routing_auto_completed", "encounter", encounter_id,
                after={"department": department.value, "entries": [e.id for e in completed]},
            )

        logger.info(
            f"All {department.value} orders done for encounter {encounter_id}; "
            f"completed {len(completed)} routing entr{'y' if len(completed) == 1 else 'ies'}"
        )
        return completed

    def recompute_routing_status(self, conn: sqlite3.Connection, encounter_id: str) -> RoutingStatus:
        """routing_complete iff every non-cancelled entry is completed."""
        statuses = [
            RoutingEntryStatus(row[0]) for row in conn.execute(
                "SELECT status FROM department_routing WHERE encounter_id = ?",
                (encounter_id,)
            )
        ]
        if not statuses:
            routing_status = RoutingStatus.NONE
        elif all(
            s == RoutingEntryStatus.COMPLETED
            for s in statuses if s != RoutingEntryStatus.CANCELLED
        ):
            routing_status = RoutingStatus.ROUTING_COMPLETE
        else:
            routing_status = RoutingStatus.PENDING_ROUTING

        self._set_routing_status(conn, encounter_id, routing_status)
        return routing_status

    def _set_routing_status(
        self,
        conn: sqlite3.Connection,
        encounter_id: str,
        routing_status: RoutingStatus,
    ) -> None:
        conn.execute(
            "UPDATE encounters SET routing_status = ?, updated_at = ? WHERE id = ?",
            (routing_status.value, self.now_fn().isoformat(), encounter_id)
        )

    def _apply_status(
        self,
        conn: sqlite3.Connection,
        entry: RoutingEntry,
        new_status: RoutingEntryStatus,
    ) -> None:
        if new_status not in ROUTING_TRANSITIONS[entry.status]:
            logger.info(
                f"Rejected routing entry {entry.id} transition "
                f"{entry.status.value} -> {new_status.value}"
            )
            raise InvalidTransition("routing_entry", entry.id, entry.status.value, new_status.value)

        now = self.now_fn()
        if new_status == RoutingEntryStatus.IN_PROGRESS:
            entry.started_at = now
        elif new_status == RoutingEntryStatus.COMPLETED:
            entry.started_at = entry.started_at or now
            entry.completed_at = now
        entry.status = new_status

        conn.execute(
            """
            UPDATE department_routing
            SET status = ?, started_at = ?, completed_at = ?, notes = ?
            WHERE id = ?
            """,
            (
                entry.status.value,
                entry.started_at.isoformat() if entry.started_at else None,
                entry.completed_at.isoformat() if entry.completed_at else None,
                entry.notes,
                entry.id,
            )
        )

    def _cancel_entry(
        self,
        conn: sqlite3.Connection,
        entry: RoutingEntry,
        reason: str | None,
    ) -> None:
        cancel_note = f"Cancelled: {reason}" if reason else "Cancelled"
        entry.notes = f"{entry.notes} | {cancel_note}" if entry.notes else cancel_note
        self._apply_status(conn, entry, RoutingEntryStatus.CANCELLED)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_queue(
        self,
        department: Department,
        statuses: list[RoutingEntryStatus] | None = None,
    ) -> list[dict[str, Any]]:
        """A department's work queue, most urgent first then oldest first."""
        statuses = statuses or [RoutingEntryStatus.PENDING, RoutingEntryStatus.IN_PROGRESS]
        placeholders = ",".join("?" * len(statuses))
        now = self.now_fn()

        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT r.*,
                       p.name AS patient_name,
                       p.patient_number,
                       e.encounter_number,
                       e.chief_complaint,
                       e.triage_time,
                       e.status AS encounter_status,
                       res.label AS room_label
                FROM department_routing r
                JOIN encounters e ON e.id = r.encounter_id
                LEFT JOIN patients p ON p.id = r.patient_id
                LEFT JOIN resources res ON res.encounter_id = r.encounter_id
                WHERE r.department = ? AND r.status IN ({placeholders})
                ORDER BY {PRIORITY_ORDER_SQL}, r.routed_at
                """,
                [department.value] + [s.value for s in statuses]
            ).fetchall()

        queue = []
        for row in rows:
            item = RoutingEntry.from_row(row).to_dict()
            item.update({
                "patient_name": row["patient_name"],
                "patient_number": row["patient_number"],
                "encounter_number": row["encounter_number"],
                "chief_complaint": row["chief_complaint"],
                "encounter_status": row["encounter_status"],
                "room": row["room_label"],
                "triage_priority": triage_priority(
                    parse_datetime(row["triage_time"]), now
                ).value,
            })
            queue.append(item)
        return queue

    def routing_history(
        self,
        encounter_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> list[RoutingEntry]:
        with self.db.read(conn) as read_conn:
            rows = read_conn.execute(
                """
                SELECT * FROM department_routing
                WHERE encounter_id = ?
                ORDER BY routed_at, rowid
                """,
                (encounter_id,)
            ).fetchall()
        return [RoutingEntry.from_row(row) for row in rows]
