"""Lab result entry and reference-range evaluation.

Values are classified against the lab_reference_ranges table. Anything in a
critical band raises a critical result for the ordering provider, which stays
open until someone acknowledges it.
"""

import logging
from dataclasses import dataclass
from typing import Any

from common.alert_store import CriticalDirection

from .database import ClinicDatabase
from .errors import ValidationError
from .models import Department, OrderStatus
from .notifications import NotificationService
from .orders import OrderService

logger = logging.getLogger(__name__)


@dataclass
class ReferenceRange:
    analyte: str
    min_normal: float | None
    max_normal: float | None
    critical_low: float | None = None
    critical_high: float | None = None
    unit: str | None = None

    def classify(self, value: float) -> str:
        """normal, low, high, critical_low or critical_high."""
        if self.critical_low is not None and value < self.critical_low:
            return CriticalDirection.CRITICAL_LOW.value
        if self.critical_high is not None and value > self.critical_high:
            return CriticalDirection.CRITICAL_HIGH.value
        if self.min_normal is not None and value < self.min_normal:
            return "low"
        if self.max_normal is not None and value > self.max_normal:
            return "high"
        return "normal"

    def describe(self) -> str:
        low = f"{self.min_normal:g}" if self.min_normal is not None else ""
        high = f"{self.max_normal:g}" if self.max_normal is not None else ""
        unit = f" {self.unit}" if self.unit else ""
        return f"{low}-{high}{unit}"


class LabResultService:
    """Record lab values against an order and flag critical ones."""

    def __init__(
        self,
        db: ClinicDatabase,
        orders: OrderService,
        notifications: NotificationService,
    ):
        self.db = db
        self.orders = orders
        self.notifications = notifications

    def get_reference_range(self, analyte: str) -> ReferenceRange | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM lab_reference_ranges WHERE analyte = ?",
                (analyte.lower(),)
            ).fetchone()
        if not row:
            return None
        return ReferenceRange(
            analyte=row["analyte"],
            min_normal=row["min_normal"],
            max_normal=row["max_normal"],
            critical_low=row["critical_low"],
            critical_high=row["critical_high"],
            unit=row["unit"],
        )

    def evaluate(self, analyte: str, value: float) -> dict[str, Any]:
        ref = self.get_reference_range(analyte)
        if ref is None:
            return {"analyte": analyte, "value": value, "flag": None, "reference_range": None}
        return {
            "analyte": analyte,
            "value": value,
            "flag": ref.classify(value),
            "reference_range": ref.describe(),
        }

    def record_lab_result(
        self,
        order_id: str,
        results: dict[str, Any],
        recorded_by: str | None = None,
    ) -> dict[str, Any]:
        """Store results on a lab order, complete it and raise critical results.

        Args:
            order_id: Lab order
            results: Analyte name -> numeric value

        Returns:
            Dict with the completed order and per-analyte evaluations
        """
        if not results:
            raise ValidationError("No results provided", {"results": "At least one value is required"})

        errors = {}
        values: dict[str, float] = {}
        for analyte, raw in results.items():
            if isinstance(raw, bool):
                errors[analyte] = "Must be a number"
                continue
            try:
                values[analyte] = float(raw)
            except (TypeError, ValueError):
                errors[analyte] = "Must be a number"
        if errors:
            raise ValidationError("Invalid lab results", errors)

        order = self.orders.get_order(order_id)
        if order.department != Department.LAB:
            raise ValidationError(
                "Results can only be recorded on lab orders",
                {"order_id": f"Order {order_id} is a {order.department.value} order"},
            )

        evaluations = [self.evaluate(analyte, value) for analyte, value in values.items()]

        with self.db.transaction() as tx:
            order = self.orders.update_order_status(
                order_id,
                OrderStatus.COMPLETED,
                actor=recorded_by,
                result={"values": values, "evaluations": evaluations},
                conn=tx,
            )
            for evaluation in evaluations:
                if evaluation["flag"] in (
                    CriticalDirection.CRITICAL_LOW.value,
                    CriticalDirection.CRITICAL_HIGH.value,
                ):
                    self.notifications.queue_critical_result(
                        tx,
                        lab_order_id=order.id,
                        direction=CriticalDirection(evaluation["flag"]),
                        analyte=evaluation["analyte"],
                        result_value=evaluation["value"],
                        ordering_provider_id=order.ordering_provider_id,
                        encounter_id=order.encounter_id,
                        patient_id=order.patient_id,
                        reference_range=evaluation["reference_range"],
                    )

        critical = [e for e in evaluations if e["flag"] and e["flag"].startswith("critical")]
        if critical:
            logger.warning(
                f"Lab order {order_id}: {len(critical)} critical value(s): "
                + ", ".join(f"{e['analyte']}={e['value']:g}" for e in critical)
            )
        return {"order": order.to_dict(), "evaluations": evaluations}
