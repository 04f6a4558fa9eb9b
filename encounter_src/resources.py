"""Registry of exam rooms and short-stay beds.

A resource is reserved with a single conditional UPDATE, so two staff members
racing for the same room cannot both win: the second sees zero rows changed
and gets ResourceOccupied naming the current occupant.
"""

import logging
import sqlite3
from datetime import datetime

from .database import ClinicDatabase, generate_id
from .errors import ConflictError, NotFoundError, ResourceOccupied
from .models import Resource, ResourceKind

logger = logging.getLogger(__name__)


class ResourceRegistry:
    """Reserve and release rooms and beds."""

    def __init__(self, db: ClinicDatabase):
        self.db = db

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def add_resource(
        self,
        kind: ResourceKind,
        label: str,
        resource_id: str | None = None,
        notes: str | None = None,
    ) -> Resource:
        resource = Resource(id=resource_id or generate_id(), kind=kind, label=label, notes=notes)
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO resources (id, kind, label, is_available, notes)
                VALUES (?, ?, ?, 1, ?)
                """,
                (resource.id, kind.value, label, notes)
            )
        logger.info(f"Added {kind.value} {label} ({resource.id})")
        return resource

    def seed(self, kind: ResourceKind, count: int, prefix: str | None = None) -> list[Resource]:
        """Create numbered resources, skipping labels that already exist."""
        prefix = prefix or ("Room" if kind == ResourceKind.ROOM else "Bed")
        existing = {r.label for r in self.list_resources(kind)}
        created = []
        for n in range(1, count + 1):
            label = f"{prefix} {n}"
            if label not in existing:
                created.append(self.add_resource(kind, label))
        return created

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_resource(self, resource_id: str, conn: sqlite3.Connection | None = None) -> Resource:
        with self.db.read(conn) as read_conn:
            row = read_conn.execute(
                "SELECT * FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
        if not row:
            raise NotFoundError("resource", resource_id)
        return Resource.from_row(row)

    def list_resources(
        self,
        kind: ResourceKind | None = None,
        available_only: bool = False,
    ) -> list[Resource]:
        conditions = []
        params: list = []
        if kind:
            conditions.append("kind = ?")
            params.append(kind.value)
        if available_only:
            conditions.append("is_available = 1")
        where_clause = " AND ".join(conditions) if conditions else "1=1"

        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM resources WHERE {where_clause} ORDER BY kind, label",
                params
            ).fetchall()
        return [Resource.from_row(row) for row in rows]

    def resource_for_encounter(
        self,
        encounter_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> Resource | None:
        with self.db.read(conn) as read_conn:
            row = read_conn.execute(
                "SELECT * FROM resources WHERE encounter_id = ?", (encounter_id,)
            ).fetchone()
        return Resource.from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Reserve / release
    # -------------------------------------------------------------------------

    def try_reserve(
        self,
        resource_id: str,
        encounter_id: str,
        patient_id: str,
        assigned_by: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Resource:
        """Bind a free resource to an encounter.

        Raises:
            NotFoundError: unknown resource
            ResourceOccupied: resource is bound to some encounter
        """
        with self.db.write(conn) as tx:
            try:
                cursor = tx.execute(
                    """
                    UPDATE resources
                    SET is_available = 0, encounter_id = ?, patient_id = ?,
                        assigned_at = ?, assigned_by = ?
                    WHERE id = ? AND is_available = 1
                    """,
                    (encounter_id, patient_id, datetime.now().isoformat(), assigned_by, resource_id)
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(
                    f"Encounter {encounter_id} already holds a resource"
                ) from e

            if cursor.rowcount == 0:
                current = self.get_resource(resource_id, conn=tx)
                logger.info(
                    f"Resource {current.label} occupied by encounter {current.encounter_id}"
                )
                raise ResourceOccupied(resource_id, current.encounter_id, current.patient_id)

            resource = self.get_resource(resource_id, conn=tx)

        logger.info(f"Reserved {resource.label} for encounter {encounter_id}")
        return resource

    def release(self, resource_id: str, conn: sqlite3.Connection | None = None) -> bool:
        """Free a resource whatever it is bound to, unbinding its encounter.

        Returns:
            True if the resource was occupied before the call
        """
        with self.db.write(conn) as tx:
            cursor = tx.execute(
                """
                UPDATE resources
                SET is_available = 1, encounter_id = NULL, patient_id = NULL,
                    assigned_at = NULL, assigned_by = NULL
                WHERE id = ? AND is_available = 0
                """,
                (resource_id,)
            )
            if cursor.rowcount == 0:
                # Raises for unknown resources; already free is fine
                self.get_resource(resource_id, conn=tx)
                return False
            tx.execute(
                "UPDATE encounters SET resource_id = NULL, updated_at = ? WHERE resource_id = ?",
                (datetime.now().isoformat(), resource_id)
            )

        logger.info(f"Released resource {resource_id}")
        return True

    def release_for_encounter(
        self,
        encounter_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> str | None:
        """Free whatever resource an encounter holds. Returns its ID, if any."""
        with self.db.write(conn) as tx:
            resource = self.resource_for_encounter(encounter_id, conn=tx)
            if resource is None:
                return None
            self.release(resource.id, conn=tx)
        return resource.id
