"""Audit log for encounter state changes."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .database import ClinicDatabase
from .models import parse_datetime
from .outbox import EffectKind, Outbox

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    id: int
    actor: str | None
    action: str
    entity_type: str
    entity_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row) -> "AuditEntry":
        return cls(
            id=row["id"],
            actor=row["actor"],
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            before=json.loads(row["before_state"]) if row["before_state"] else None,
            after=json.loads(row["after_state"]) if row["after_state"] else None,
            created_at=parse_datetime(row["created_at"]),
        )


class AuditLog:
    """Queues audit entries through the outbox and writes them on delivery."""

    def __init__(self, db: ClinicDatabase):
        self.db = db

    def record(
        self,
        conn: sqlite3.Connection,
        actor: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> str:
        return Outbox.enqueue(conn, EffectKind.AUDIT, {
            "actor": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "before": before,
            "after": after,
            "at": datetime.now().isoformat(),
        })

    def write(self, effect_id: str, payload: dict[str, Any]) -> None:
        """Outbox handler. Re-delivery of the same effect is a no-op."""
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO audit_logs
                (actor, action, entity_type, entity_id, before_state, after_state,
                 created_at, effect_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payload.get("actor"),
                    payload["action"],
                    payload["entity_type"],
                    payload["entity_id"],
                    json.dumps(payload["before"]) if payload.get("before") is not None else None,
                    json.dumps(payload["after"]) if payload.get("after") is not None else None,
                    payload.get("at") or datetime.now().isoformat(),
                    effect_id,
                )
            )
            conn.commit()

    def entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 200,
    ) -> list[AuditEntry]:
        conditions = []
        params: list[Any] = []
        if entity_type:
            conditions.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            conditions.append("entity_id = ?")
            params.append(entity_id)
        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_logs
                WHERE {where_clause}
                ORDER BY id ASC
                LIMIT ?
                """,
                params
            ).fetchall()
        return [AuditEntry.from_row(row) for row in rows]
