"""SQLite store for clinic encounters, resources, routing, orders and billing.

All writes go through `transaction()`, which opens a `BEGIN IMMEDIATE`
transaction. SQLite takes the write lock up front, so concurrent writers in
other threads or processes queue behind each other instead of interleaving.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import DEFAULT_REFERENCE_RANGES, config
from .errors import DependencyError, NotFoundError
from .models import Encounter, Patient, Staff, StaffRole

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS staff (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS patients (
    id TEXT PRIMARY KEY,
    patient_number TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Exam rooms and short-stay beds; never deleted
CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK (kind IN ('room', 'bed')),
    label TEXT NOT NULL,
    is_available INTEGER NOT NULL DEFAULT 1,
    encounter_id TEXT,
    patient_id TEXT,
    assigned_at TEXT,
    assigned_by TEXT,
    notes TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    CHECK (
        (is_available = 1 AND encounter_id IS NULL)
        OR (is_available = 0 AND encounter_id IS NOT NULL)
    )
);

-- A single encounter holds at most one resource
CREATE UNIQUE INDEX IF NOT EXISTS idx_resources_encounter
    ON resources(encounter_id) WHERE encounter_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS encounters (
    id TEXT PRIMARY KEY,
    encounter_number TEXT UNIQUE NOT NULL,
    patient_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'checked_in',
    routing_status TEXT NOT NULL DEFAULT 'none',
    encounter_type TEXT NOT NULL DEFAULT 'walk-in',
    chief_complaint TEXT,
    clinic TEXT,
    encounter_date TEXT NOT NULL,
    physician_id TEXT,
    nurse_id TEXT,
    receptionist_id TEXT,
    resource_id TEXT,
    triage_time TEXT,
    checked_in_at TEXT,
    nurse_started_at TEXT,
    doctor_started_at TEXT,
    doctor_completed_at TEXT,
    completed_at TEXT,
    discharged_at TEXT,
    cancelled_at TEXT,
    cancel_reason TEXT,
    vital_signs TEXT,
    vitals_recorded_at TEXT,
    updated_at TEXT
);

-- One open encounter per patient per day; check and insert are one statement
CREATE UNIQUE INDEX IF NOT EXISTS idx_encounters_active_daily
    ON encounters(patient_id, encounter_date)
    WHERE status NOT IN ('discharged', 'cancelled');

CREATE INDEX IF NOT EXISTS idx_encounters_status ON encounters(status);

CREATE TABLE IF NOT EXISTS vital_signs_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    encounter_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    recorded_by TEXT,
    vital_signs TEXT NOT NULL,
    critical_values TEXT,
    FOREIGN KEY (encounter_id) REFERENCES encounters(id)
);

CREATE INDEX IF NOT EXISTS idx_vitals_encounter ON vital_signs_history(encounter_id, recorded_at);

CREATE TABLE IF NOT EXISTS department_routing (
    id TEXT PRIMARY KEY,
    encounter_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    department TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'routine',
    routed_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    routed_by TEXT,
    notes TEXT,
    FOREIGN KEY (encounter_id) REFERENCES encounters(id)
);

CREATE INDEX IF NOT EXISTS idx_routing_encounter ON department_routing(encounter_id);
CREATE INDEX IF NOT EXISTS idx_routing_queue ON department_routing(department, status);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    encounter_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    department TEXT NOT NULL,
    item_name TEXT NOT NULL,
    item_code TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'routine',
    quantity INTEGER NOT NULL DEFAULT 1,
    ordering_provider_id TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (encounter_id) REFERENCES encounters(id)
);

CREATE INDEX IF NOT EXISTS idx_orders_encounter ON orders(encounter_id, department, status);

CREATE TABLE IF NOT EXISTS appointments (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    encounter_id TEXT,
    start_time TEXT NOT NULL,
    duration_minutes INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'scheduled',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_appointments_provider ON appointments(provider_id, start_time);

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_number TEXT UNIQUE NOT NULL,
    encounter_id TEXT UNIQUE NOT NULL,
    patient_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    subtotal REAL NOT NULL DEFAULT 0,
    total REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS invoice_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    unit_price REAL NOT NULL,
    total_price REAL NOT NULL,
    order_id TEXT,
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);

-- Local price catalog
CREATE TABLE IF NOT EXISTS charge_master (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    price REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS lab_reference_ranges (
    analyte TEXT PRIMARY KEY,
    min_normal REAL,
    max_normal REAL,
    critical_low REAL,
    critical_high REAL,
    unit TEXT
);

-- Side effects recorded with the state change, delivered after commit
CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    claimed_at TEXT,
    delivered_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox(status, created_at);

CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor TEXT,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    before_state TEXT,
    after_state TEXT,
    created_at TEXT NOT NULL,
    effect_id TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs(entity_type, entity_id);
"""


def generate_id() -> str:
    return str(uuid.uuid4())[:8]


class ClinicDatabase:
    """SQLite database for the encounter orchestration engine."""

    def __init__(self, db_path: str | None = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to CLINIC_DB_PATH.
        """
        self.db_path = db_path or config.CLINIC_DB_PATH

        # Ensure directory exists
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and default reference ranges."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
            self._run_migrations(conn)
            conn.executemany(
                """
                INSERT OR IGNORE INTO lab_reference_ranges
                (analyte, min_normal, max_normal, critical_low, critical_high, unit)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(name, *values) for name, values in DEFAULT_REFERENCE_RANGES.items()]
            )
            conn.commit()

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        """Add new columns to existing databases."""
        outbox_cols = {row[1] for row in conn.execute("PRAGMA table_info(outbox)")}

        outbox_migrations = [
            ("claimed_at", "ALTER TABLE outbox ADD COLUMN claimed_at TEXT"),
        ]

        for col_name, sql in outbox_migrations:
            if col_name not in outbox_cols:
                conn.execute(sql)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a read connection."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.OperationalError as e:
            raise DependencyError(f"Clinic database unavailable: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise DependencyError(f"Clinic database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block as one write transaction.

        Commits on success and rolls back on any exception. Store failures
        surface as DependencyError.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        except sqlite3.OperationalError as e:
            raise DependencyError(f"Clinic database unavailable: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back: {e}")
            raise DependencyError(f"Clinic database error: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def write(
        self, conn: sqlite3.Connection | None = None
    ) -> Generator[sqlite3.Connection, None, None]:
        """Join the caller's transaction, or open a new one."""
        if conn is not None:
            yield conn
        else:
            with self.transaction() as tx:
                yield tx

    @contextmanager
    def read(
        self, conn: sqlite3.Connection | None = None
    ) -> Generator[sqlite3.Connection, None, None]:
        """Read on the caller's connection, or open a new one."""
        if conn is not None:
            yield conn
        else:
            with self.connection() as read_conn:
                yield read_conn

    # -------------------------------------------------------------------------
    # Staff and patients (administrative)
    # -------------------------------------------------------------------------

    def add_staff(
        self,
        name: str,
        role: StaffRole,
        staff_id: str | None = None,
        is_active: bool = True,
    ) -> Staff:
        staff = Staff(id=staff_id or generate_id(), name=name, role=role, is_active=is_active)
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO staff (id, name, role, is_active) VALUES (?, ?, ?, ?)",
                (staff.id, staff.name, staff.role.value, int(staff.is_active))
            )
        return staff

    def get_staff(self, staff_id: str) -> Staff:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM staff WHERE id = ?", (staff_id,)).fetchone()
        if not row:
            raise NotFoundError("staff", staff_id)
        return Staff.from_row(row)

    def list_staff(
        self,
        role: StaffRole | None = None,
        active_only: bool = True,
        conn: sqlite3.Connection | None = None,
    ) -> list[Staff]:
        """List staff, ordered by name."""
        conditions = []
        params: list = []
        if role:
            conditions.append("role = ?")
            params.append(role.value)
        if active_only:
            conditions.append("is_active = 1")
        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = f"SELECT * FROM staff WHERE {where_clause} ORDER BY name, id"

        with self.read(conn) as read_conn:
            return [Staff.from_row(row) for row in read_conn.execute(query, params)]

    def add_patient(
        self,
        name: str,
        patient_number: str | None = None,
        patient_id: str | None = None,
    ) -> Patient:
        patient_id = patient_id or generate_id()
        patient = Patient(
            id=patient_id,
            patient_number=patient_number or f"PAT-{patient_id.upper()}",
            name=name,
        )
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO patients (id, patient_number, name) VALUES (?, ?, ?)",
                (patient.id, patient.patient_number, patient.name)
            )
        return patient

    def get_patient(self, patient_id: str) -> Patient:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM patients WHERE id = ?", (patient_id,)).fetchone()
        if not row:
            raise NotFoundError("patient", patient_id)
        return Patient.from_row(row)

    # -------------------------------------------------------------------------
    # Catalogs
    # -------------------------------------------------------------------------

    def add_charge(self, code: str, name: str, category: str, price: float) -> None:
        """Add or replace a charge master entry."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO charge_master (code, name, category, price, is_active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (code, name, category, price)
            )

    def set_reference_range(
        self,
        analyte: str,
        min_normal: float | None,
        max_normal: float | None,
        critical_low: float | None = None,
        critical_high: float | None = None,
        unit: str | None = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO lab_reference_ranges
                (analyte, min_normal, max_normal, critical_low, critical_high, unit)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (analyte.lower(), min_normal, max_normal, critical_low, critical_high, unit)
            )


def fetch_encounter(conn: sqlite3.Connection, encounter_id: str) -> Encounter:
    row = conn.execute("SELECT * FROM encounters WHERE id = ?", (encounter_id,)).fetchone()
    if not row:
        raise NotFoundError("encounter", encounter_id)
    return Encounter.from_row(row)
