"""Facade over the encounter orchestration components.

ClinicService wires the components to one database and is the call surface
used by the dashboard and the runner. After every mutating call it drains the
outbox so alerts reach staff right away; anything that fails to deliver stays
queued for the next drain.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from common.alert_store import CriticalResultAlert, StoredAlert
from common.channels import LivePushChannel, Subscription

from .assignment import AssignmentStrategy
from .audit import AuditEntry, AuditLog
from .billing import BillingService, PricingCatalog
from .config import config
from .database import ClinicDatabase
from .encounters import EncounterService
from .errors import ClinicError
from .lab_results import LabResultService
from .models import (
    Department,
    Encounter,
    EncounterType,
    Invoice,
    Order,
    OrderStatus,
    Priority,
    Resource,
    ResourceKind,
    RoutingEntry,
    RoutingEntryStatus,
    VitalSignsRecord,
    parse_datetime,
)
from .notifications import NotificationService
from .orders import OrderService
from .outbox import EffectDispatcher, EffectKind
from .queue_view import derive_workflow_status, minutes_waiting, triage_priority
from .resources import ResourceRegistry
from .router import DepartmentRouter

logger = logging.getLogger(__name__)


class ClinicService:
    """Single entry point for clinic encounter operations."""

    def __init__(
        self,
        db_path: str | None = None,
        push: LivePushChannel | None = None,
        catalog: PricingCatalog | None = None,
        assignment: AssignmentStrategy | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
        auto_drain: bool = True,
    ):
        self.db = ClinicDatabase(db_path)
        self.now_fn = now_fn
        self.auto_drain = auto_drain

        self.audit = AuditLog(self.db)
        self.notifications = NotificationService(
            self.db, push=push or LivePushChannel(queue_size=config.PUSH_QUEUE_SIZE)
        )
        self.resources = ResourceRegistry(self.db)
        self.router = DepartmentRouter(self.db, self.notifications, self.audit, now_fn=now_fn)
        self.orders = OrderService(self.db, self.router, self.audit, now_fn=now_fn)
        self.lab_results = LabResultService(self.db, self.orders, self.notifications)
        self.billing = BillingService(self.db, self.audit, catalog=catalog, now_fn=now_fn)
        self.encounters = EncounterService(
            self.db,
            self.resources,
            self.router,
            self.notifications,
            self.billing,
            self.audit,
            assignment=assignment,
            now_fn=now_fn,
        )

        self.dispatcher = EffectDispatcher(self.db, self.notifications.handlers())
        self.dispatcher.register(EffectKind.AUDIT, self.audit.write)

    def _after_commit(self) -> None:
        if not self.auto_drain:
            return
        try:
            self.dispatcher.drain()
        except ClinicError as e:
            # The business change is committed; effects stay queued
            logger.error(f"Outbox drain failed: {e}")

    # -------------------------------------------------------------------------
    # Encounter lifecycle
    # -------------------------------------------------------------------------

    def check_in(
        self,
        patient_id: str,
        chief_complaint: str | None = None,
        clinic: str | None = None,
        encounter_type: EncounterType = EncounterType.WALK_IN,
        receptionist_id: str | None = None,
    ) -> Encounter:
        encounter = self.encounters.check_in(
            patient_id, chief_complaint, clinic, encounter_type, receptionist_id
        )
        self._after_commit()
        return encounter

    def assign_resource(
        self, encounter_id: str, resource_id: str, assigned_by: str | None = None
    ) -> Encounter:
        encounter = self.encounters.assign_resource(encounter_id, resource_id, assigned_by)
        self._after_commit()
        return encounter

    def release_resource(self, encounter_id: str, actor: str | None = None) -> Encounter:
        encounter = self.encounters.release_resource(encounter_id, actor)
        self._after_commit()
        return encounter

    def record_vitals(
        self, encounter_id: str, vitals: dict[str, Any], recorded_by: str | None = None
    ) -> dict[str, Any]:
        result = self.encounters.record_vitals(encounter_id, vitals, recorded_by)
        self._after_commit()
        return result

    def vitals_history(self, encounter_id: str) -> list[VitalSignsRecord]:
        return self.encounters.vitals_history(encounter_id)

    def alert_physician(
        self, encounter_id: str, nurse_id: str | None = None, message: str | None = None
    ) -> Encounter:
        encounter = self.encounters.alert_physician(encounter_id, nurse_id, message)
        self._after_commit()
        return encounter

    def complete_physician_work(
        self, encounter_id: str, physician_id: str | None = None
    ) -> Encounter:
        encounter = self.encounters.complete_physician_work(encounter_id, physician_id)
        self._after_commit()
        return encounter

    def finish_and_release(
        self, encounter_id: str, release_only: bool = False, actor: str | None = None
    ) -> dict[str, Any]:
        result = self.encounters.finish_and_release(encounter_id, release_only, actor)
        self._after_commit()
        return result

    def checkout(self, encounter_id: str, receptionist_id: str | None = None) -> Encounter:
        encounter = self.encounters.checkout(encounter_id, receptionist_id)
        self._after_commit()
        return encounter

    def assign_nurse(
        self, encounter_id: str, nurse_id: str, actor: str | None = None
    ) -> Encounter:
        encounter = self.encounters.assign_nurse(encounter_id, nurse_id, actor)
        self._after_commit()
        return encounter

    def start_nurse_work(self, encounter_id: str, nurse_id: str | None = None) -> Encounter:
        encounter = self.encounters.start_nurse_work(encounter_id, nurse_id)
        self._after_commit()
        return encounter

    def start_physician_work(
        self, encounter_id: str, physician_id: str | None = None
    ) -> Encounter:
        encounter = self.encounters.start_physician_work(encounter_id, physician_id)
        self._after_commit()
        return encounter

    def cancel_encounter(
        self, encounter_id: str, reason: str | None = None, actor: str | None = None
    ) -> Encounter:
        encounter = self.encounters.cancel_encounter(encounter_id, reason, actor)
        self._after_commit()
        return encounter

    def get_encounter(self, encounter_id: str) -> Encounter:
        return self.encounters.get_encounter(encounter_id)

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def add_resource(self, kind: ResourceKind, label: str, notes: str | None = None) -> Resource:
        return self.resources.add_resource(kind, label, notes=notes)

    def list_resources(
        self, kind: ResourceKind | None = None, available_only: bool = False
    ) -> list[Resource]:
        return self.resources.list_resources(kind, available_only)

    # -------------------------------------------------------------------------
    # Department routing
    # -------------------------------------------------------------------------

    def route(
        self,
        encounter_id: str,
        department: Department,
        priority: Priority = Priority.ROUTINE,
        notes: str | None = None,
        routed_by: str | None = None,
    ) -> RoutingEntry:
        entry = self.router.route(encounter_id, department, priority, notes, routed_by)
        self._after_commit()
        return entry

    def advance_routing_status(
        self, entry_id: str, new_status: RoutingEntryStatus, actor: str | None = None
    ) -> RoutingEntry:
        entry = self.router.advance_status(entry_id, new_status, actor)
        self._after_commit()
        return entry

    def cancel_routing(
        self, entry_id: str, reason: str | None = None, actor: str | None = None
    ) -> RoutingEntry:
        entry = self.router.cancel(entry_id, reason, actor)
        self._after_commit()
        return entry

    def list_queue(
        self, department: Department, statuses: list[RoutingEntryStatus] | None = None
    ) -> list[dict[str, Any]]:
        return self.router.list_queue(department, statuses)

    def routing_history(self, encounter_id: str) -> list[RoutingEntry]:
        self.encounters.get_encounter(encounter_id)
        return self.router.routing_history(encounter_id)

    # -------------------------------------------------------------------------
    # Patient queue
    # -------------------------------------------------------------------------

    def get_patient_queue(
        self,
        clinic: str | None = None,
        include_finished: bool = False,
    ) -> list[dict[str, Any]]:
        """Every encounter still in the clinic, with its derived dashboard state.

        Longest-waiting first. Nothing in the result is read from a cached
        column: triage band, pending orders and workflow label are computed
        from the stored status, routing entries and orders.
        """
        now = self.now_fn()
        conditions = []
        params: list[Any] = []
        if not include_finished:
            conditions.append("e.status NOT IN ('discharged', 'cancelled')")
        else:
            conditions.append("e.encounter_date = ?")
            params.append(now.date().isoformat())
        if clinic:
            conditions.append("e.clinic = ?")
            params.append(clinic)

        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT e.*,
                       p.name AS patient_name,
                       p.patient_number,
                       r.label AS room_label
                FROM encounters e
                LEFT JOIN patients p ON p.id = e.patient_id
                LEFT JOIN resources r ON r.encounter_id = e.id
                WHERE {" AND ".join(conditions)}
                ORDER BY e.triage_time
                """,
                params
            ).fetchall()

            queue = []
            for row in rows:
                encounter = Encounter.from_row(row)
                entries = self.router.routing_history(encounter.id, conn=conn)
                pending = self.orders.pending_counts(encounter.id, conn=conn)
                triage_time = parse_datetime(row["triage_time"])

                item = encounter.to_dict()
                item.update({
                    "patient_name": row["patient_name"],
                    "patient_number": row["patient_number"],
                    "room": row["room_label"],
                    "minutes_waiting": round(minutes_waiting(triage_time, now), 1),
                    "triage_priority": triage_priority(triage_time, now).value,
                    "pending_orders": pending,
                    "active_routing": [
                        e.to_dict() for e in entries if not e.status.is_terminal
                    ],
                    "workflow_status": derive_workflow_status(
                        encounter.status, entries, pending
                    ),
                })
                queue.append(item)
        return queue

    # -------------------------------------------------------------------------
    # Orders and results
    # -------------------------------------------------------------------------

    def place_order(
        self,
        encounter_id: str,
        department: Department,
        item_name: str,
        item_code: str | None = None,
        quantity: int = 1,
        priority: Priority = Priority.ROUTINE,
        ordering_provider_id: str | None = None,
    ) -> Order:
        order = self.orders.place_order(
            encounter_id, department, item_name, item_code, quantity, priority,
            ordering_provider_id,
        )
        self._after_commit()
        return order

    def update_order_status(
        self, order_id: str, new_status: OrderStatus, actor: str | None = None
    ) -> Order:
        order = self.orders.update_order_status(order_id, new_status, actor)
        self._after_commit()
        return order

    def list_orders(self, encounter_id: str, department: Department | None = None) -> list[Order]:
        return self.orders.list_orders(encounter_id, department)

    def record_lab_result(
        self, order_id: str, results: dict[str, Any], recorded_by: str | None = None
    ) -> dict[str, Any]:
        result = self.lab_results.record_lab_result(order_id, results, recorded_by)
        self._after_commit()
        return result

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------

    def generate_invoice(self, encounter_id: str, actor: str | None = None) -> Invoice:
        invoice = self.billing.generate_invoice(encounter_id, actor=actor)
        self._after_commit()
        return invoice

    def get_invoice(self, encounter_id: str) -> Invoice:
        return self.billing.get_invoice(encounter_id)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def subscribe(self, user_id: str) -> Subscription:
        return self.notifications.subscribe(user_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.notifications.unsubscribe(subscription)

    def list_unread(self, user_id: str, limit: int = 50) -> list[StoredAlert]:
        return self.notifications.list_unread(user_id, limit)

    def mark_read(self, user_id: str, alert_ids: list[str] | None = None) -> int:
        return self.notifications.mark_read(user_id, alert_ids)

    def acknowledge_critical_result(self, alert_id: str, acknowledged_by: str) -> CriticalResultAlert:
        return self.notifications.acknowledge_critical_result(alert_id, acknowledged_by)

    def list_critical_results(
        self, ordering_provider_id: str | None = None
    ) -> list[CriticalResultAlert]:
        return self.notifications.list_unacknowledged_critical(ordering_provider_id)

    # -------------------------------------------------------------------------
    # Outbox and audit
    # -------------------------------------------------------------------------

    def drain_outbox(self, limit: int = 100) -> dict[str, int]:
        return self.dispatcher.drain(limit)

    def audit_entries(
        self, entity_type: str | None = None, entity_id: str | None = None
    ) -> list[AuditEntry]:
        return self.audit.entries(entity_type, entity_id)
