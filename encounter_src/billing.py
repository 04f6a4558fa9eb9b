"""Invoice generation for finished encounters.

A draft invoice with the consultation fee is opened at check-in. When the
encounter finishes, the invoice is regenerated from scratch: one consultation
line plus one line per billable order. Regeneration replaces items, so
running it twice never double-bills.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

import requests

from .audit import AuditLog
from .config import (
    CONSULTATION_FEES,
    DEFAULT_CONSULTATION_FEE,
    DEFAULT_IMAGING_PRICE,
    DEFAULT_LAB_PRICE,
    DEFAULT_PHARMACY_UNIT_PRICE,
    IMAGING_PRICES,
    config,
)
from .database import ClinicDatabase, fetch_encounter, generate_id
from .errors import NotFoundError
from .models import (
    Department,
    Encounter,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Order,
)

logger = logging.getLogger(__name__)


class PricingCatalog(ABC):
    """Price lookup for billable order items."""

    @abstractmethod
    def price_for(self, order: Order) -> float | None:
        """Unit price for an order's item, or None if the catalog has no match."""
        pass


class ChargeMasterCatalog(PricingCatalog):
    """Prices from the local charge_master table, by code then by name."""

    def __init__(self, db: ClinicDatabase):
        self.db = db

    def price_for(self, order: Order) -> float | None:
        with self.db.connection() as conn:
            row = None
            if order.item_code:
                row = conn.execute(
                    "SELECT price FROM charge_master WHERE code = ? AND is_active = 1",
                    (order.item_code,)
                ).fetchone()
            if row is None:
                row = conn.execute(
                    """
                    SELECT price FROM charge_master
                    WHERE LOWER(name) = LOWER(?) AND category = ? AND is_active = 1
                    """,
                    (order.item_name, order.department.value)
                ).fetchone()
        return row["price"] if row else None


class HTTPPricingCatalog(PricingCatalog):
    """Prices from a remote charge master service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or config.CHARGE_MASTER_URL or "").rstrip("/")
        self.timeout = timeout or config.CHARGE_MASTER_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def price_for(self, order: Order) -> float | None:
        params = {"name": order.item_name, "category": order.department.value}
        if order.item_code:
            params["code"] = order.item_code

        try:
            response = self.session.get(
                f"{self.base_url}/prices",
                params=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

        price = response.json().get("price")
        return float(price) if price is not None else None


def get_pricing_catalog(db: ClinicDatabase) -> PricingCatalog:
    """Factory: remote charge master if configured, otherwise the local table."""
    if config.use_remote_charge_master():
        logger.info(f"Using remote charge master at {config.CHARGE_MASTER_URL}")
        return HTTPPricingCatalog()
    return ChargeMasterCatalog(db)


def fallback_price(order: Order) -> float:
    if order.department == Department.LAB:
        return DEFAULT_LAB_PRICE
    if order.department == Department.IMAGING:
        return IMAGING_PRICES.get(order.item_name, DEFAULT_IMAGING_PRICE)
    return DEFAULT_PHARMACY_UNIT_PRICE


def consultation_fee(encounter: Encounter) -> float:
    return CONSULTATION_FEES.get(encounter.encounter_type.value, DEFAULT_CONSULTATION_FEE)


class BillingService:
    """Derives an itemized invoice from an encounter."""

    def __init__(
        self,
        db: ClinicDatabase,
        audit: AuditLog,
        catalog: PricingCatalog | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.audit = audit
        self.catalog = catalog or get_pricing_catalog(db)
        self.now_fn = now_fn

    def _price(self, order: Order) -> float:
        try:
            price = self.catalog.price_for(order)
        except Exception as e:
            logger.warning(
                f"Price lookup failed for {order.item_name} ({order.item_code}): {e}; "
                f"using default"
            )
            price = None
        return price if price is not None else fallback_price(order)

    def _consultation_item(self, encounter: Encounter) -> InvoiceItem:
        return InvoiceItem(
            description=f"Consultation ({encounter.encounter_type.value})",
            category="consultation",
            quantity=1,
            unit_price=consultation_fee(encounter),
        )

    def _next_invoice_number(self, conn: sqlite3.Connection) -> str:
        row = conn.execute(
            "SELECT MAX(CAST(SUBSTR(invoice_number, 4) AS INTEGER)) FROM invoices"
        ).fetchone()
        return f"INV{(row[0] or 0) + 1:06d}"

    def _write_items(
        self,
        conn: sqlite3.Connection,
        invoice: Invoice,
    ) -> None:
        conn.execute("DELETE FROM invoice_items WHERE invoice_id = ?", (invoice.id,))
        conn.executemany(
            """
            INSERT INTO invoice_items (
                invoice_id, description, category, quantity, unit_price,
                total_price, order_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    invoice.id, item.description, item.category, item.quantity,
                    item.unit_price, item.total_price, item.order_id,
                )
                for item in invoice.items
            ]
        )

    def create_draft_invoice(self, conn: sqlite3.Connection, encounter: Encounter) -> Invoice:
        """Open a draft invoice seeded with the consultation fee."""
        now = self.now_fn()
        items = [self._consultation_item(encounter)]
        subtotal = round(sum(item.total_price for item in items), 2)
        invoice = Invoice(
            id=generate_id(),
            invoice_number=self._next_invoice_number(conn),
            encounter_id=encounter.id,
            patient_id=encounter.patient_id,
            status=InvoiceStatus.DRAFT,
            subtotal=subtotal,
            total=subtotal,
            items=items,
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO invoices (
                id, invoice_number, encounter_id, patient_id, status,
                subtotal, total, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.id, invoice.invoice_number, invoice.encounter_id,
                invoice.patient_id, invoice.status.value, invoice.subtotal,
                invoice.total, now.isoformat(), now.isoformat(),
            )
        )
        self._write_items(conn, invoice)
        return invoice

    def generate_invoice(
        self,
        encounter_id: str,
        actor: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Invoice:
        """Rebuild the encounter's invoice from its consultation and billable orders."""
        with self.db.write(conn) as tx:
            encounter = fetch_encounter(tx, encounter_id)
            orders = [
                Order.from_row(row) for row in tx.execute(
                    "SELECT * FROM orders WHERE encounter_id = ? ORDER BY created_at, rowid",
                    (encounter_id,)
                )
            ]

            items = [self._consultation_item(encounter)]
            for order in orders:
                if not order.is_billable:
                    continue
                items.append(InvoiceItem(
                    description=order.item_name,
                    category=order.department.value,
                    quantity=order.quantity,
                    unit_price=self._price(order),
                    order_id=order.id,
                ))

            row = tx.execute(
                "SELECT * FROM invoices WHERE encounter_id = ?", (encounter_id,)
            ).fetchone()
            if row:
                invoice = Invoice.from_row(row)
                before = {"status": invoice.status.value, "total": invoice.total}
            else:
                invoice = self.create_draft_invoice(tx, encounter)
                before = None

            now = self.now_fn()
            invoice.items = items
            invoice.subtotal = round(sum(item.total_price for item in items), 2)
            invoice.total = invoice.subtotal
            invoice.status = InvoiceStatus.PENDING
            invoice.updated_at = now

            tx.execute(
                """
                UPDATE invoices SET status = ?, subtotal = ?, total = ?, updated_at = ?
                WHERE id = ?
                """,
                (invoice.status.value, invoice.subtotal, invoice.total, now.isoformat(), invoice.id)
            )
            self._write_items(tx, invoice)
            self.audit.record(
                tx, actor, "invoice_generated", "invoice", invoice.id,
                before=before,
                after={"status": invoice.status.value, "total": invoice.total,
                       "items": len(invoice.items)},
            )

        logger.info(
            f"Invoice {invoice.invoice_number} for encounter {encounter_id}: "
            f"{len(invoice.items)} item(s), total {invoice.total:.2f}"
        )
        return invoice

    def get_invoice(self, encounter_id: str) -> Invoice:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE encounter_id = ?", (encounter_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("invoice", encounter_id)
            items = [
                InvoiceItem.from_row(item_row) for item_row in conn.execute(
                    "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY id",
                    (row["id"],)
                )
            ]
        return Invoice.from_row(row, items)
