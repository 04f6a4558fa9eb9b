"""Directed notifications for clinic staff.

Every alert is persisted first (AlertStore) and then pushed to any live
dashboard connection the recipient holds (LivePushChannel). The durable row
is the source of truth: a user who was offline sees it as unread on the next
dashboard load. Workflow code queues alerts through the outbox so they are
only delivered once the state change they describe has committed.
"""

import logging
import sqlite3
from typing import Any

from common.alert_store import (
    AlertStore,
    AlertType,
    CriticalDirection,
    CriticalResultAlert,
    StoredAlert,
)
from common.channels import LivePushChannel, PushMessage, Subscription

from .database import ClinicDatabase
from .errors import NotFoundError
from .models import StaffRole
from .outbox import EffectKind, Outbox

logger = logging.getLogger(__name__)


class NotificationService:
    """Alert fan-out, read tracking and critical result acknowledgment."""

    def __init__(
        self,
        db: ClinicDatabase,
        store: AlertStore | None = None,
        push: LivePushChannel | None = None,
    ):
        self.db = db
        self.store = store or AlertStore(db.db_path)
        self.push = push or LivePushChannel()

    # -------------------------------------------------------------------------
    # Queued from inside a business transaction
    # -------------------------------------------------------------------------

    def queue_alert(
        self,
        conn: sqlite3.Connection,
        alert_type: AlertType,
        recipient_id: str,
        message: str,
        title: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        sender_id: str | None = None,
    ) -> str:
        return Outbox.enqueue(conn, EffectKind.ALERT, {
            "alert_type": alert_type.value,
            "recipient_id": recipient_id,
            "message": message,
            "title": title or AlertType.display_name(alert_type),
            "encounter_id": encounter_id,
            "patient_id": patient_id,
            "sender_id": sender_id,
        })

    def queue_role_alert(
        self,
        conn: sqlite3.Connection,
        role: StaffRole,
        alert_type: AlertType,
        message: str,
        title: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        sender_id: str | None = None,
    ) -> str:
        return Outbox.enqueue(conn, EffectKind.ROLE_ALERT, {
            "role": role.value,
            "alert_type": alert_type.value,
            "message": message,
            "title": title or AlertType.display_name(alert_type),
            "encounter_id": encounter_id,
            "patient_id": patient_id,
            "sender_id": sender_id,
        })

    def queue_mark_encounter_read(
        self,
        conn: sqlite3.Connection,
        encounter_id: str,
        alert_type: AlertType | None = None,
        performed_by: str | None = None,
    ) -> str:
        return Outbox.enqueue(conn, EffectKind.MARK_READ, {
            "encounter_id": encounter_id,
            "alert_type": alert_type.value if alert_type else None,
            "performed_by": performed_by,
        })

    def queue_critical_result(
        self,
        conn: sqlite3.Connection,
        lab_order_id: str,
        direction: CriticalDirection,
        analyte: str,
        result_value: float,
        ordering_provider_id: str | None,
        encounter_id: str | None,
        patient_id: str | None,
        reference_range: str | None,
    ) -> str:
        return Outbox.enqueue(conn, EffectKind.CRITICAL_RESULT, {
            "lab_order_id": lab_order_id,
            "direction": direction.value,
            "analyte": analyte,
            "result_value": result_value,
            "ordering_provider_id": ordering_provider_id,
            "encounter_id": encounter_id,
            "patient_id": patient_id,
            "reference_range": reference_range,
        })

    # -------------------------------------------------------------------------
    # Outbox handlers
    # -------------------------------------------------------------------------

    def handlers(self) -> dict[EffectKind, Any]:
        return {
            EffectKind.ALERT: self._deliver_alert,
            EffectKind.ROLE_ALERT: self._deliver_role_alert,
            EffectKind.MARK_READ: self._deliver_mark_read,
            EffectKind.CRITICAL_RESULT: self._deliver_critical_result,
        }

    def _deliver_alert(self, effect_id: str, payload: dict[str, Any]) -> None:
        self.send(
            AlertType(payload["alert_type"]),
            payload["recipient_id"],
            payload["message"],
            title=payload.get("title"),
            encounter_id=payload.get("encounter_id"),
            patient_id=payload.get("patient_id"),
            sender_id=payload.get("sender_id"),
            dedupe_key=effect_id,
        )

    def _deliver_role_alert(self, effect_id: str, payload: dict[str, Any]) -> None:
        self.send_to_role(
            StaffRole(payload["role"]),
            AlertType(payload["alert_type"]),
            payload["message"],
            title=payload.get("title"),
            encounter_id=payload.get("encounter_id"),
            patient_id=payload.get("patient_id"),
            sender_id=payload.get("sender_id"),
            dedupe_prefix=effect_id,
        )

    def _deliver_mark_read(self, effect_id: str, payload: dict[str, Any]) -> None:
        alert_type = AlertType(payload["alert_type"]) if payload.get("alert_type") else None
        self.mark_encounter_read(
            payload["encounter_id"],
            alert_type=alert_type,
            performed_by=payload.get("performed_by"),
        )

    def _deliver_critical_result(self, effect_id: str, payload: dict[str, Any]) -> None:
        self.raise_critical_result(
            lab_order_id=payload["lab_order_id"],
            direction=CriticalDirection(payload["direction"]),
            analyte=payload["analyte"],
            result_value=payload["result_value"],
            ordering_provider_id=payload.get("ordering_provider_id"),
            encounter_id=payload.get("encounter_id"),
            patient_id=payload.get("patient_id"),
            reference_range=payload.get("reference_range"),
        )

    # -------------------------------------------------------------------------
    # Direct delivery
    # -------------------------------------------------------------------------

    def send(
        self,
        alert_type: AlertType,
        recipient_id: str,
        message: str,
        title: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        sender_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> StoredAlert:
        """Persist an alert for one recipient, then push it live.

        An alert already stored under the same dedupe_key is returned
        without a second push.
        """
        alert, created = self.store.save_alert(
            alert_type,
            recipient_id,
            message,
            title=title or AlertType.display_name(alert_type),
            encounter_id=encounter_id,
            patient_id=patient_id,
            sender_id=sender_id,
            dedupe_key=dedupe_key,
        )
        if created:
            self._push(alert)
        return alert

    def send_to_role(
        self,
        role: StaffRole,
        alert_type: AlertType,
        message: str,
        title: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        sender_id: str | None = None,
        dedupe_prefix: str | None = None,
    ) -> list[StoredAlert]:
        """One alert per active member of a role."""
        members = self.db.list_staff(role, active_only=True)
        if not members:
            logger.warning(f"No active {role.value} staff to receive {alert_type.value}")
            return []

        alerts = []
        for member in members:
            alerts.append(self.send(
                alert_type,
                member.id,
                message,
                title=title,
                encounter_id=encounter_id,
                patient_id=patient_id,
                sender_id=sender_id,
                dedupe_key=f"{dedupe_prefix}:{member.id}" if dedupe_prefix else None,
            ))
        return alerts

    def _push(self, alert: StoredAlert) -> None:
        """Best-effort live push; the stored alert is already durable."""
        try:
            self.push.publish(alert.recipient_id, PushMessage("notification", alert.to_dict()))
        except Exception as e:
            logger.warning(f"Live push failed for alert {alert.id}: {e}")

    # -------------------------------------------------------------------------
    # Reading and acknowledging
    # -------------------------------------------------------------------------

    def subscribe(self, user_id: str) -> Subscription:
        return self.push.subscribe(user_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.push.unsubscribe(subscription)

    def list_unread(self, user_id: str, limit: int = 50) -> list[StoredAlert]:
        return self.store.list_unread(user_id, limit=limit)

    def mark_read(self, user_id: str, alert_ids: list[str] | None = None) -> int:
        """Mark a user's alerts read. Other users' alerts are never touched."""
        return self.store.mark_read(user_id, alert_ids)

    def mark_encounter_read(
        self,
        encounter_id: str,
        alert_type: AlertType | None = None,
        performed_by: str | None = None,
    ) -> int:
        return self.store.mark_encounter_read(encounter_id, alert_type, performed_by)

    def raise_critical_result(
        self,
        lab_order_id: str,
        direction: CriticalDirection,
        analyte: str,
        result_value: float,
        ordering_provider_id: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        reference_range: str | None = None,
    ) -> CriticalResultAlert:
        """Record a critical result and alert the ordering provider.

        Idempotent per (lab order, direction): repeated readings neither
        create a second record nor send a second alert.
        """
        critical, created = self.store.save_critical_result(
            lab_order_id,
            direction,
            analyte,
            result_value,
            ordering_provider_id=ordering_provider_id,
            encounter_id=encounter_id,
            patient_id=patient_id,
            reference_range=reference_range,
        )

        if critical.ordering_provider_id:
            label = "LOW" if critical.alert_type == CriticalDirection.CRITICAL_LOW else "HIGH"
            self.send(
                AlertType.CRITICAL_RESULT,
                critical.ordering_provider_id,
                f"CRITICAL {label}: {critical.analyte} = {critical.result_value:g}"
                + (f" (ref {critical.reference_range})" if critical.reference_range else ""),
                encounter_id=critical.encounter_id,
                patient_id=critical.patient_id,
                dedupe_key=f"critical:{critical.id}",
            )
        elif created:
            logger.warning(f"Critical result {critical.id} has no ordering provider to notify")

        return critical

    def acknowledge_critical_result(
        self,
        alert_id: str,
        acknowledged_by: str,
    ) -> CriticalResultAlert:
        """Acknowledge a critical result. A repeat call leaves the first acknowledgment."""
        self.store.acknowledge_critical_result(alert_id, acknowledged_by)
        critical = self.store.get_critical_result(alert_id)
        if critical is None:
            raise NotFoundError("critical_result", alert_id)
        return critical

    def list_unacknowledged_critical(
        self,
        ordering_provider_id: str | None = None,
    ) -> list[CriticalResultAlert]:
        return self.store.list_critical_results(ordering_provider_id, unacknowledged_only=True)
