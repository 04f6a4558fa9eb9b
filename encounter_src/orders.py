"""Lab, imaging and pharmacy orders.

Orders are the trigger source for routing auto-completion: when an order
reaches a terminal status, the router checks whether its department has any
open orders left for the encounter.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from .audit import AuditLog
from .database import ClinicDatabase, fetch_encounter, generate_id
from .errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from .models import (
    ORDER_DEPARTMENTS,
    Department,
    Order,
    OrderStatus,
    Priority,
)
from .router import DepartmentRouter

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.COMPLETED,
        OrderStatus.DISPENSED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.IN_PROGRESS: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.DISPENSED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.DISPENSED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderService:
    """Place orders and move them through their lifecycle."""

    def __init__(
        self,
        db: ClinicDatabase,
        router: DepartmentRouter,
        audit: AuditLog,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.router = router
        self.audit = audit
        self.now_fn = now_fn

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
        errors = {}
        if department not in ORDER_DEPARTMENTS:
            errors["department"] = "Orders go to lab, imaging or pharmacy"
        if not item_name or not item_name.strip():
            errors["item_name"] = "Item name is required"
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            errors["quantity"] = "Quantity must be a positive whole number"
        if errors:
            raise ValidationError("Invalid order", errors)

        with self.db.transaction() as tx:
            encounter = fetch_encounter(tx, encounter_id)
            if encounter.status.is_terminal:
                raise ConflictError(
                    f"Cannot order for encounter {encounter_id}: it is {encounter.status.value}"
                )

            order = Order(
                id=generate_id(),
                encounter_id=encounter.id,
                patient_id=encounter.patient_id,
                department=department,
                item_name=item_name.strip(),
                item_code=item_code,
                priority=priority,
                quantity=quantity,
                ordering_provider_id=ordering_provider_id or encounter.physician_id,
                created_at=self.now_fn(),
            )
            tx.execute(
                """
                INSERT INTO orders (
                    id, encounter_id, patient_id, department, item_name, item_code,
                    status, priority, quantity, ordering_provider_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.id, order.encounter_id, order.patient_id,
                    order.department.value, order.item_name, order.item_code,
                    order.status.value, order.priority.value, order.quantity,
                    order.ordering_provider_id, order.created_at.isoformat(),
                )
            )
            self.audit.record(
                tx, order.ordering_provider_id, "order_placed", "order", order.id,
                after=order.to_dict(),
            )

        logger.info(
            f"Placed {department.value} order {order.id} ({order.item_name}) "
            f"for encounter {encounter_id}"
        )
        return order

    def get_order(self, order_id: str, conn: sqlite3.Connection | None = None) -> Order:
        with self.db.read(conn) as read_conn:
            row = read_conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            raise NotFoundError("order", order_id)
        return Order.from_row(row)

    def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        actor: str | None = None,
        result: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Order:
        """Move an order forward. Terminal statuses trigger routing auto-completion."""
        with self.db.write(conn) as tx:
            order = self.get_order(order_id, conn=tx)
            before = order.to_dict()

            if new_status not in ORDER_TRANSITIONS[order.status]:
                logger.info(
                    f"Rejected order {order_id} transition "
                    f"{order.status.value} -> {new_status.value}"
                )
                raise InvalidTransition("order", order_id, order.status.value, new_status.value)
            if new_status == OrderStatus.DISPENSED and order.department != Department.PHARMACY:
                raise ValidationError(
                    "Only pharmacy orders can be dispensed",
                    {"status": "dispensed applies to pharmacy orders only"},
                )

            order.status = new_status
            if new_status.is_terminal:
                order.completed_at = self.now_fn()
            if result is not None:
                order.result = result

            tx.execute(
                "UPDATE orders SET status = ?, completed_at = ?, result = ? WHERE id = ?",
                (
                    order.status.value,
                    order.completed_at.isoformat() if order.completed_at else None,
                    json.dumps(order.result) if order.result is not None else None,
                    order.id,
                )
            )
            self.audit.record(
                tx, actor, f"order_{new_status.value}", "order", order.id,
                before=before, after=order.to_dict(),
            )

            if new_status.is_terminal:
                self.router.auto_complete_on_orders_finished(
                    order.encounter_id, order.department, conn=tx
                )

        logger.info(f"Order {order_id} -> {new_status.value}")
        return order

    def list_orders(
        self,
        encounter_id: str,
        department: Department | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Order]:
        query = "SELECT * FROM orders WHERE encounter_id = ?"
        params: list[Any] = [encounter_id]
        if department:
            query += " AND department = ?"
            params.append(department.value)
        query += " ORDER BY created_at, rowid"

        with self.db.read(conn) as read_conn:
            return [Order.from_row(row) for row in read_conn.execute(query, params)]

    def pending_counts(
        self,
        encounter_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, int]:
        """Non-terminal order count per department."""
        counts = {d.value: 0 for d in ORDER_DEPARTMENTS}
        with self.db.read(conn) as read_conn:
            for row in read_conn.execute(
                """
                SELECT department, COUNT(*) AS n FROM orders
                WHERE encounter_id = ?
                  AND status NOT IN ('completed', 'dispensed', 'cancelled')
                GROUP BY department
                """,
                (encounter_id,)
            ):
                counts[row["department"]] = row["n"]
        return counts
