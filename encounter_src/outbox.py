"""Post-commit side effects.

Business operations record their side effects (alerts, audit entries,
critical results) as outbox rows in the same transaction as the state change.
After commit the dispatcher delivers them. A failed delivery never fails the
business operation: it is logged, counted, and retried on the next drain.

Each effect is claimed with a conditional update before its handler runs,
so concurrent drains never hand the same effect to two handlers.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from .config import config
from .database import ClinicDatabase, generate_id

logger = logging.getLogger(__name__)


class EffectKind(Enum):
    ALERT = "alert"                      # One alert to one recipient
    ROLE_ALERT = "role_alert"            # One alert per active member of a role
    MARK_READ = "mark_read"              # Mark an encounter's alerts read
    AUDIT = "audit"
    CRITICAL_RESULT = "critical_result"


class EffectStatus(Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    DELIVERED = "delivered"
    FAILED = "failed"


# Handler signature: (effect_id, payload) -> None; raise to signal failure
EffectHandler = Callable[[str, dict[str, Any]], None]


class Outbox:
    """Writes effects inside a caller's transaction."""

    @staticmethod
    def enqueue(conn: sqlite3.Connection, kind: EffectKind, payload: dict[str, Any]) -> str:
        effect_id = generate_id()
        conn.execute(
            """
            INSERT INTO outbox (id, kind, payload, status, attempts, created_at)
            VALUES (?, ?, ?, 'pending', 0, ?)
            """,
            (effect_id, kind.value, json.dumps(payload, default=str), datetime.now().isoformat())
        )
        return effect_id


class EffectDispatcher:
    """Delivers pending outbox effects to their handlers."""

    def __init__(
        self,
        db: ClinicDatabase,
        handlers: dict[EffectKind, EffectHandler] | None = None,
        max_attempts: int | None = None,
        claim_timeout: int | None = None,
    ):
        self.db = db
        self.handlers: dict[EffectKind, EffectHandler] = dict(handlers or {})
        self.max_attempts = max_attempts or config.OUTBOX_MAX_ATTEMPTS
        self.claim_timeout = claim_timeout or config.OUTBOX_CLAIM_TIMEOUT_SECONDS

    def register(self, kind: EffectKind, handler: EffectHandler) -> None:
        self.handlers[kind] = handler

    def _stale_before(self) -> str:
        return (datetime.now() - timedelta(seconds=self.claim_timeout)).isoformat()

    def pending(self, limit: int = 100) -> list[dict[str, Any]]:
        """Effects waiting for delivery, including abandoned claims."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, kind, payload, attempts FROM outbox
                WHERE status = 'pending'
                   OR (status = 'dispatching' AND claimed_at < ?)
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (self._stale_before(), limit)
            ).fetchall()
        return [dict(row) for row in rows]

    def drain(self, limit: int = 100) -> dict[str, int]:
        """Deliver up to `limit` pending effects in creation order.

        Returns:
            Counts of delivered, retried and failed effects
        """
        stats = {"delivered": 0, "retry": 0, "failed": 0}

        for effect in self.pending(limit):
            if not self._claim(effect["id"]):
                continue
            outcome = self._dispatch(effect)
            stats[outcome] += 1

        if stats["retry"] or stats["failed"]:
            logger.warning(
                f"Outbox drain: {stats['delivered']} delivered, "
                f"{stats['retry']} pending retry, {stats['failed']} failed"
            )
        elif stats["delivered"]:
            logger.debug(f"Outbox drain: {stats['delivered']} delivered")
        return stats

    def _claim(self, effect_id: str) -> bool:
        """Take ownership of an effect. False if another drain holds it."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE outbox SET status = 'dispatching', claimed_at = ?
                WHERE id = ?
                  AND (status = 'pending'
                       OR (status = 'dispatching' AND claimed_at < ?))
                """,
                (datetime.now().isoformat(), effect_id, self._stale_before())
            )
            conn.commit()
        if cursor.rowcount == 0:
            logger.debug(f"Outbox effect {effect_id} claimed by another drain")
            return False
        return True

    def _dispatch(self, effect: dict[str, Any]) -> str:
        effect_id = effect["id"]
        try:
            kind = EffectKind(effect["kind"])
            handler = self.handlers.get(kind)
            if handler is None:
                raise LookupError(f"No handler registered for {kind.value}")
            handler(effect_id, json.loads(effect["payload"]))
        except Exception as e:
            return self._record_failure(effect, e)

        with self.db.connection() as conn:
            conn.execute(
                "UPDATE outbox SET status = 'delivered', delivered_at = ? WHERE id = ?",
                (datetime.now().isoformat(), effect_id)
            )
            conn.commit()
        return "delivered"

    def _record_failure(self, effect: dict[str, Any], error: Exception) -> str:
        attempts = effect["attempts"] + 1
        status = EffectStatus.FAILED if attempts >= self.max_attempts else EffectStatus.PENDING

        logger.error(
            f"Outbox effect {effect['id']} ({effect['kind']}) failed "
            f"attempt {attempts}/{self.max_attempts}: {error}"
        )
        with self.db.connection() as conn:
            conn.execute(
                """
                UPDATE outbox SET attempts = ?, last_error = ?, status = ?, claimed_at = NULL
                WHERE id = ?
                """,
                (attempts, str(error), status.value, effect["id"])
            )
            conn.commit()
        return "failed" if status == EffectStatus.FAILED else "retry"

    def counts(self) -> dict[str, int]:
        """Outbox row counts by status."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM outbox GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in EffectStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts
