from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class RoleOperations:
    """Database operations for RoleAssociations and guest grants."""

    # --- Role associations ----------------------------------------------------
    def insert_role_association(self, actor_id: str, entity_type: str, entity_id: str, role: str) -> bool:
        """Insert an association; returns False when the exact tuple already exists."""
        with self.connection() as db:
            cur = db.execute(
                """
                INSERT OR IGNORE INTO RoleAssociations (actor_id, entity_type, entity_id, role)
                VALUES (?, ?, ?, ?)
                """,
                (actor_id, entity_type, entity_id, role),
            )
            return cur.rowcount > 0

    def delete_role_association(self, actor_id: str, entity_type: str, entity_id: str, role: str) -> bool:
        with self.connection() as db:
            cur = db.execute(
                "DELETE FROM RoleAssociations WHERE actor_id = ? AND entity_type = ? AND entity_id = ? AND role = ?",
                (actor_id, entity_type, entity_id, role),
            )
            return cur.rowcount > 0

    def get_role_associations(self, actor_id: str) -> List[Dict[str, Any]]:
        with self.connection() as db:
            rows = db.execute(
                """
                SELECT actor_id, entity_type, entity_id, role
                FROM RoleAssociations
                WHERE actor_id = ?
                ORDER BY association_id
                """,
                (actor_id,),
            )
            return [dict(r) for r in rows]

    def list_actors_for_entity(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        with self.connection() as db:
            rows = db.execute(
                "SELECT actor_id, entity_type, entity_id, role FROM RoleAssociations "
                "WHERE entity_type = ? AND entity_id = ? ORDER BY association_id",
                (entity_type, entity_id),
            )
            return [dict(r) for r in rows]

    # --- Guest grants ---------------------------------------------------------
    def insert_guest_grant(
        self,
        actor_id: str,
        valid_from: str,
        valid_until: str,
        device_ids: Iterable[str],
        created_by: Optional[str] = None,
    ) -> int:
        with self.connection() as db:
            cur = db.execute(
                "INSERT INTO GuestGrants (actor_id, valid_from, valid_until, created_by) VALUES (?, ?, ?, ?)",
                (actor_id, valid_from, valid_until, created_by),
            )
            grant_id = cur.lastrowid
            db.executemany(
                "INSERT OR IGNORE INTO GuestGrantDevices (grant_id, device_id) VALUES (?, ?)",
                [(grant_id, device_id) for device_id in device_ids],
            )
            return grant_id

    def delete_guest_grant(self, grant_id: int) -> bool:
        with self.connection() as db:
            db.execute("DELETE FROM GuestGrantDevices WHERE grant_id = ?", (grant_id,))
            return db.execute("DELETE FROM GuestGrants WHERE grant_id = ?", (grant_id,)).rowcount > 0

    def get_guest_grant_row(self, grant_id: int) -> Optional[Dict[str, Any]]:
        with self.connection() as db:
            row = db.execute("SELECT * FROM GuestGrants WHERE grant_id = ?", (grant_id,)).fetchone()
            if row is None:
                return None
            return self._with_devices(db, dict(row))

    def get_guest_grant_rows(self, actor_id: str) -> List[Dict[str, Any]]:
        with self.connection() as db:
            rows = db.execute(
                "SELECT * FROM GuestGrants WHERE actor_id = ? ORDER BY grant_id",
                (actor_id,),
            ).fetchall()
            return [self._with_devices(db, dict(r)) for r in rows]

    @staticmethod
    def _with_devices(db, grant: Dict[str, Any]) -> Dict[str, Any]:
        grant["device_ids"] = [
            r["device_id"]
            for r in db.execute(
                "SELECT device_id FROM GuestGrantDevices WHERE grant_id = ? ORDER BY device_id",
                (grant["grant_id"],),
            )
        ]
        return grant
