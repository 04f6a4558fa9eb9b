"""Staff assignment strategies.

Decides which physician gets an unassigned patient, either when the nurse
hands the patient to a doctor or when check-in books an implicit appointment
slot. Swap in a different strategy to change the policy (load balancing,
specialty matching) without touching the encounter workflow.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from .database import ClinicDatabase
from .models import Staff, StaffRole, parse_datetime

logger = logging.getLogger(__name__)


class AssignmentStrategy(ABC):
    """Base class for staff assignment policies."""

    @abstractmethod
    def select(
        self,
        conn: sqlite3.Connection,
        role: StaffRole,
        start: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> Staff | None:
        """Pick a staff member of a role, or None if nobody qualifies.

        When start and duration are given, only staff with no overlapping
        scheduled appointment qualify.
        """


class FirstAvailableStrategy(AssignmentStrategy):
    """First active staff member by name, skipping anyone already booked."""

    def __init__(self, db: ClinicDatabase):
        self.db = db

    def select(
        self,
        conn: sqlite3.Connection,
        role: StaffRole,
        start: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> Staff | None:
        candidates = self.db.list_staff(role, active_only=True, conn=conn)
        if start is None or not duration_minutes:
            return candidates[0] if candidates else None

        end = start + timedelta(minutes=duration_minutes)
        for staff in candidates:
            if not self._has_overlap(conn, staff.id, start, end):
                return staff

        logger.info(f"No {role.value} free for slot starting {start:%H:%M}")
        return None

    def _has_overlap(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        start: datetime,
        end: datetime,
    ) -> bool:
        rows = conn.execute(
            """
            SELECT start_time, duration_minutes FROM appointments
            WHERE provider_id = ? AND status = 'scheduled'
              AND start_time >= ? AND start_time < ?
            """,
            (
                provider_id,
                (start - timedelta(days=1)).isoformat(),
                end.isoformat(),
            )
        ).fetchall()
        for row in rows:
            booked_start = parse_datetime(row["start_time"])
            booked_end = booked_start + timedelta(minutes=row["duration_minutes"])
            if booked_start < end and booked_end > start:
                return True
        return False
