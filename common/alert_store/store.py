"""SQLite-backed alert storage for directed clinic notifications."""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator

from .models import (
    AlertType,
    AuditAction,
    CriticalDirection,
    StoredAlert,
    CriticalResultAlert,
    AlertAuditEntry,
)

logger = logging.getLogger(__name__)

SCHEMA = """
-- Directed alerts; never deleted
CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    alert_type TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    message TEXT,
    title TEXT,
    encounter_id TEXT,
    patient_id TEXT,
    sender_id TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    read_at TEXT,
    dedupe_key TEXT UNIQUE
);

-- Out-of-range lab values, one per (order, direction)
CREATE TABLE IF NOT EXISTS critical_result_alerts (
    id TEXT PRIMARY KEY,
    lab_order_id TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    analyte TEXT NOT NULL,
    result_value REAL NOT NULL,
    ordering_provider_id TEXT,
    encounter_id TEXT,
    patient_id TEXT,
    reference_range TEXT,
    acknowledged INTEGER NOT NULL DEFAULT 0,
    acknowledged_at TEXT,
    acknowledged_by TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(lab_order_id, alert_type)
);

CREATE TABLE IF NOT EXISTS alert_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id TEXT NOT NULL,
    action TEXT NOT NULL,
    performed_by TEXT,
    performed_at TEXT NOT NULL,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_alerts_recipient ON alerts(recipient_id, is_read);
CREATE INDEX IF NOT EXISTS idx_alerts_encounter ON alerts(encounter_id);
CREATE INDEX IF NOT EXISTS idx_critical_provider ON critical_result_alerts(ordering_provider_id, acknowledged);
CREATE INDEX IF NOT EXISTS idx_alert_audit_alert ON alert_audit(alert_id);
"""

ALERT_COLUMNS = """
    id, alert_type, recipient_id, message, title, encounter_id, patient_id,
    sender_id, is_read, created_at, read_at, dedupe_key
"""

CRITICAL_COLUMNS = """
    id, lab_order_id, alert_type, analyte, result_value, ordering_provider_id,
    encounter_id, patient_id, reference_range, acknowledged, acknowledged_at,
    acknowledged_by, created_at
"""


class AlertStore:
    """SQLite-backed storage for alert delivery and acknowledgment."""

    def __init__(self, db_path: str | None = None):
        """Initialize alert store.

        Args:
            db_path: Path to SQLite database. Defaults to ALERT_DB_PATH env var
                     or ~/.aegis/clinic.db
        """
        if db_path:
            self.db_path = os.path.expanduser(db_path)
        else:
            self.db_path = os.path.expanduser(
                os.environ.get("ALERT_DB_PATH", "~/.aegis/clinic.db")
            )

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _generate_id(self) -> str:
        """Generate a unique alert ID."""
        return str(uuid.uuid4())[:8]

    # Directed alerts

    def save_alert(
        self,
        alert_type: AlertType,
        recipient_id: str,
        message: str,
        title: str = "",
        encounter_id: str | None = None,
        patient_id: str | None = None,
        sender_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> tuple[StoredAlert, bool]:
        """Save a new alert for one recipient.

        When a dedupe_key is given and a row with that key already exists,
        the existing alert is returned instead of inserting a second one.

        Returns:
            (alert, created) where created is False for an existing row
        """
        alert_id = self._generate_id()
        now = datetime.now()

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO alerts (
                    id, alert_type, recipient_id, message, title,
                    encounter_id, patient_id, sender_id, is_read, created_at,
                    dedupe_key
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    alert_id, alert_type.value, recipient_id, message, title,
                    encounter_id, patient_id, sender_id, now.isoformat(),
                    dedupe_key,
                )
            )

            if cursor.rowcount == 0:
                existing = self._get_by_dedupe_key(conn, dedupe_key)
                logger.debug(f"Alert for {dedupe_key} already stored as {existing.id}")
                return existing, False

            conn.execute(
                """
                INSERT INTO alert_audit (alert_id, action, performed_by, performed_at)
                VALUES (?, ?, ?, ?)
                """,
                (alert_id, AuditAction.CREATED.value, sender_id, now.isoformat())
            )
            conn.commit()

        logger.info(f"Created {alert_type.value} alert {alert_id} for {recipient_id}")

        return StoredAlert(
            id=alert_id,
            alert_type=alert_type,
            recipient_id=recipient_id,
            message=message,
            title=title,
            encounter_id=encounter_id,
            patient_id=patient_id,
            sender_id=sender_id,
            created_at=now,
            dedupe_key=dedupe_key,
        ), True

    def _get_by_dedupe_key(self, conn: sqlite3.Connection, dedupe_key: str) -> StoredAlert:
        row = conn.execute(
            f"SELECT {ALERT_COLUMNS} FROM alerts WHERE dedupe_key = ?",
            (dedupe_key,)
        ).fetchone()
        return StoredAlert.from_row(tuple(row))

    def get_alert(self, alert_id: str) -> StoredAlert | None:
        """Get an alert by ID."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {ALERT_COLUMNS} FROM alerts WHERE id = ?",
                (alert_id,)
            ).fetchone()

            if row:
                return StoredAlert.from_row(tuple(row))
            return None

    def list_alerts(
        self,
        recipient_id: str | None = None,
        encounter_id: str | None = None,
        alert_type: AlertType | None = None,
        unread_only: bool = False,
        limit: int = 100,
    ) -> list[StoredAlert]:
        """List alerts with optional filters, newest first."""
        conditions = []
        params: list[Any] = []

        if recipient_id:
            conditions.append("recipient_id = ?")
            params.append(recipient_id)

        if encounter_id:
            conditions.append("encounter_id = ?")
            params.append(encounter_id)

        if alert_type:
            conditions.append("alert_type = ?")
            params.append(alert_type.value)

        if unread_only:
            conditions.append("is_read = 0")

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {ALERT_COLUMNS}
                FROM alerts
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                params
            )
            return [StoredAlert.from_row(tuple(row)) for row in cursor.fetchall()]

    def list_unread(self, recipient_id: str, limit: int = 50) -> list[StoredAlert]:
        """Unread alerts for a user, picked up on dashboard load."""
        return self.list_alerts(recipient_id=recipient_id, unread_only=True, limit=limit)

    def count_unread(self, recipient_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM alerts WHERE recipient_id = ? AND is_read = 0",
                (recipient_id,)
            ).fetchone()
            return row[0]

    def mark_read(
        self,
        recipient_id: str,
        alert_ids: list[str] | None = None,
    ) -> int:
        """Mark a recipient's alerts read (all of them when no IDs are given).

        Returns:
            Number of alerts that changed from unread to read.
        """
        now = datetime.now().isoformat()
        params: list[Any] = [now, recipient_id]
        id_filter = ""
        if alert_ids:
            id_filter = f" AND id IN ({','.join('?' * len(alert_ids))})"
            params.extend(alert_ids)

        with self._connect() as conn:
            changed = [
                row[0] for row in conn.execute(
                    f"SELECT id FROM alerts WHERE recipient_id = ? AND is_read = 0{id_filter}",
                    params[1:]
                )
            ]
            conn.execute(
                f"""
                UPDATE alerts SET is_read = 1, read_at = ?
                WHERE recipient_id = ? AND is_read = 0{id_filter}
                """,
                params
            )
            self._audit_many(conn, changed, AuditAction.READ, recipient_id, now)
            conn.commit()

        return len(changed)

    def mark_encounter_read(
        self,
        encounter_id: str,
        alert_type: AlertType | None = None,
        performed_by: str | None = None,
    ) -> int:
        """Mark every unread alert for an encounter read, optionally by type."""
        now = datetime.now().isoformat()
        type_filter = ""
        params: list[Any] = [encounter_id]
        if alert_type:
            type_filter = " AND alert_type = ?"
            params.append(alert_type.value)

        with self._connect() as conn:
            changed = [
                row[0] for row in conn.execute(
                    f"SELECT id FROM alerts WHERE encounter_id = ? AND is_read = 0{type_filter}",
                    params
                )
            ]
            conn.execute(
                f"""
                UPDATE alerts SET is_read = 1, read_at = ?
                WHERE encounter_id = ? AND is_read = 0{type_filter}
                """,
                [now] + params
            )
            self._audit_many(conn, changed, AuditAction.READ, performed_by, now)
            conn.commit()

        if changed:
            logger.info(f"Marked {len(changed)} alert(s) read for encounter {encounter_id}")
        return len(changed)

    def _audit_many(
        self,
        conn: sqlite3.Connection,
        alert_ids: list[str],
        action: AuditAction,
        performed_by: str | None,
        performed_at: str,
    ) -> None:
        conn.executemany(
            """
            INSERT INTO alert_audit (alert_id, action, performed_by, performed_at)
            VALUES (?, ?, ?, ?)
            """,
            [(alert_id, action.value, performed_by, performed_at) for alert_id in alert_ids]
        )

    # Critical lab results

    def save_critical_result(
        self,
        lab_order_id: str,
        direction: CriticalDirection,
        analyte: str,
        result_value: float,
        ordering_provider_id: str | None = None,
        encounter_id: str | None = None,
        patient_id: str | None = None,
        reference_range: str | None = None,
    ) -> tuple[CriticalResultAlert, bool]:
        """Record a critical lab value.

        Idempotent per (lab order, direction): a duplicate reading returns the
        existing record.

        Returns:
            (alert, created) where created is False for a duplicate
        """
        alert_id = self._generate_id()
        now = datetime.now()

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO critical_result_alerts (
                    id, lab_order_id, alert_type, analyte, result_value,
                    ordering_provider_id, encounter_id, patient_id,
                    reference_range, acknowledged, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    alert_id, lab_order_id, direction.value, analyte, result_value,
                    ordering_provider_id, encounter_id, patient_id,
                    reference_range, now.isoformat(),
                )
            )
            created = cursor.rowcount > 0
            if created:
                conn.execute(
                    """
                    INSERT INTO alert_audit (alert_id, action, performed_at, details)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        alert_id, AuditAction.CREATED.value, now.isoformat(),
                        f"{analyte} {direction.value} ({result_value})",
                    )
                )
            conn.commit()

            row = conn.execute(
                f"""
                SELECT {CRITICAL_COLUMNS} FROM critical_result_alerts
                WHERE lab_order_id = ? AND alert_type = ?
                """,
                (lab_order_id, direction.value)
            ).fetchone()

        if created:
            logger.warning(
                f"Critical result {alert_id}: {analyte}={result_value} "
                f"({direction.value}) on lab order {lab_order_id}"
            )
        return CriticalResultAlert.from_row(tuple(row)), created

    def get_critical_result(self, alert_id: str) -> CriticalResultAlert | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {CRITICAL_COLUMNS} FROM critical_result_alerts WHERE id = ?",
                (alert_id,)
            ).fetchone()
            if row:
                return CriticalResultAlert.from_row(tuple(row))
            return None

    def acknowledge_critical_result(
        self,
        alert_id: str,
        acknowledged_by: str | None = None,
    ) -> bool:
        """Acknowledge a critical result. One-way: a second call returns False."""
        now = datetime.now()

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE critical_result_alerts
                SET acknowledged = 1, acknowledged_at = ?, acknowledged_by = ?
                WHERE id = ? AND acknowledged = 0
                """,
                (now.isoformat(), acknowledged_by, alert_id)
            )

            if cursor.rowcount > 0:
                conn.execute(
                    """
                    INSERT INTO alert_audit (alert_id, action, performed_by, performed_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (alert_id, AuditAction.ACKNOWLEDGED.value, acknowledged_by, now.isoformat())
                )
                conn.commit()
                logger.info(f"Critical result {alert_id} acknowledged by {acknowledged_by}")
                return True

            return False

    def list_critical_results(
        self,
        ordering_provider_id: str | None = None,
        unacknowledged_only: bool = True,
        limit: int = 100,
    ) -> list[CriticalResultAlert]:
        conditions = []
        params: list[Any] = []
        if ordering_provider_id:
            conditions.append("ordering_provider_id = ?")
            params.append(ordering_provider_id)
        if unacknowledged_only:
            conditions.append("acknowledged = 0")

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {CRITICAL_COLUMNS} FROM critical_result_alerts
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                params
            )
            return [CriticalResultAlert.from_row(tuple(row)) for row in cursor.fetchall()]

    def get_audit_log(self, alert_id: str) -> list[AlertAuditEntry]:
        """Get audit history for an alert or critical result."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT id, alert_id, action, performed_by, performed_at, details
                FROM alert_audit
                WHERE alert_id = ?
                ORDER BY id ASC
                """,
                (alert_id,)
            )
            return [AlertAuditEntry.from_row(tuple(row)) for row in cursor.fetchall()]
