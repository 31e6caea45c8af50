from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_DEVICE_COLUMNS = (
    "device_id",
    "name",
    "kind",
    "vendor",
    "property_id",
    "unit_id",
    "is_online",
    "remote_operation_enabled",
    "external_id",
    "metadata",
)

_UPDATABLE_DEVICE_COLUMNS = frozenset(_DEVICE_COLUMNS) - {"device_id"}


def _device_row(row) -> Dict[str, Any]:
    data = dict(row)
    raw = data.get("metadata")
    if raw:
        try:
            data["metadata"] = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Device %s has unreadable metadata; ignoring it", data.get("device_id"))
            data["metadata"] = {}
    else:
        data["metadata"] = {}
    data["is_online"] = bool(data.get("is_online"))
    data["remote_operation_enabled"] = bool(data.get("remote_operation_enabled"))
    return data


class EntityOperations:
    """Database operations for the ownership hierarchy tables."""

    # --- Portfolios -----------------------------------------------------------
    def insert_portfolio(self, portfolio_id: str, name: str) -> None:
        with self.connection() as db:
            db.execute("INSERT INTO Portfolios (portfolio_id, name) VALUES (?, ?)", (portfolio_id, name))

    def get_portfolio_row(self, portfolio_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as db:
            row = db.execute("SELECT * FROM Portfolios WHERE portfolio_id = ?", (portfolio_id,)).fetchone()
            if row is None:
                return None
            data = dict(row)
            data["property_ids"] = [
                r["property_id"]
                for r in db.execute(
                    "SELECT property_id FROM Properties WHERE portfolio_id = ? ORDER BY property_id",
                    (portfolio_id,),
                )
            ]
            return data

    def delete_portfolio_cascade(self, portfolio_id: str) -> int:
        """Delete a portfolio, its properties and units; orphan their devices.

        Returns:
            Number of devices left without an attachment
        """
        with self.connection() as db:
            property_ids = [
                r["property_id"]
                for r in db.execute("SELECT property_id FROM Properties WHERE portfolio_id = ?", (portfolio_id,))
            ]
            orphaned = sum(self._detach_property(db, pid) for pid in property_ids)
            db.execute(
                "DELETE FROM RoleAssociations WHERE entity_type = 'portfolio' AND entity_id = ?",
                (portfolio_id,),
            )
            db.execute("DELETE FROM Portfolios WHERE portfolio_id = ?", (portfolio_id,))
            return orphaned

    # --- Properties -----------------------------------------------------------
    def insert_property(self, property_id: str, portfolio_id: str, name: str) -> None:
        with self.connection() as db:
            db.execute(
                "INSERT INTO Properties (property_id, portfolio_id, name) VALUES (?, ?, ?)",
                (property_id, portfolio_id, name),
            )

    def get_property_row(self, property_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as db:
            row = db.execute("SELECT * FROM Properties WHERE property_id = ?", (property_id,)).fetchone()
            if row is None:
                return None
            data = dict(row)
            data["unit_ids"] = [
                r["unit_id"]
                for r in db.execute("SELECT unit_id FROM Units WHERE property_id = ? ORDER BY unit_id", (property_id,))
            ]
            return data

    def delete_property_cascade(self, property_id: str) -> int:
        """Delete a property and its units; orphan every device below it.

        Returns:
            Number of devices left without an attachment
        """
        with self.connection() as db:
            return self._detach_property(db, property_id)

    def _detach_property(self, db, property_id: str) -> int:
        unit_ids = [r["unit_id"] for r in db.execute("SELECT unit_id FROM Units WHERE property_id = ?", (property_id,))]
        orphaned = 0
        for unit_id in unit_ids:
            orphaned += db.execute("UPDATE Devices SET unit_id = NULL WHERE unit_id = ?", (unit_id,)).rowcount
            db.execute("DELETE FROM RoleAssociations WHERE entity_type = 'unit' AND entity_id = ?", (unit_id,))
        orphaned += db.execute("UPDATE Devices SET property_id = NULL WHERE property_id = ?", (property_id,)).rowcount
        db.execute("DELETE FROM Units WHERE property_id = ?", (property_id,))
        db.execute("DELETE FROM RoleAssociations WHERE entity_type = 'property' AND entity_id = ?", (property_id,))
        db.execute("DELETE FROM Properties WHERE property_id = ?", (property_id,))
        if orphaned:
            logger.warning("Deleting property %s orphaned %d device(s)", property_id, orphaned)
        return orphaned

    # --- Units ----------------------------------------------------------------
    def insert_unit(self, unit_id: str, property_id: str, name: str) -> None:
        with self.connection() as db:
            db.execute(
                "INSERT INTO Units (unit_id, property_id, name) VALUES (?, ?, ?)",
                (unit_id, property_id, name),
            )

    def get_unit_row(self, unit_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as db:
            row = db.execute("SELECT * FROM Units WHERE unit_id = ?", (unit_id,)).fetchone()
            if row is None:
                return None
            data = dict(row)
            data["device_ids"] = [
                r["device_id"]
                for r in db.execute("SELECT device_id FROM Devices WHERE unit_id = ? ORDER BY device_id", (unit_id,))
            ]
            return data

    def delete_unit_reattach(self, unit_id: str) -> int:
        """Delete a unit and move its devices to the unit's property as common-area devices.

        Returns:
            Number of devices re-attached (0 when the unit does not exist)
        """
        with self.connection() as db:
            row = db.execute("SELECT property_id FROM Units WHERE unit_id = ?", (unit_id,)).fetchone()
            if row is None:
                return 0
            moved = db.execute(
                "UPDATE Devices SET unit_id = NULL, property_id = ? WHERE unit_id = ?",
                (row["property_id"], unit_id),
            ).rowcount
            db.execute("DELETE FROM RoleAssociations WHERE entity_type = 'unit' AND entity_id = ?", (unit_id,))
            db.execute("DELETE FROM Units WHERE unit_id = ?", (unit_id,))
            return moved

    # --- Devices --------------------------------------------------------------
    def insert_device(self, device: Dict[str, Any]) -> None:
        metadata = device.get("metadata")
        with self.connection() as db:
            db.execute(
                """
                INSERT INTO Devices (
                    device_id, name, kind, vendor, property_id, unit_id,
                    is_online, remote_operation_enabled, external_id, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device["device_id"],
                    device["name"],
                    device["kind"],
                    device["vendor"],
                    device.get("property_id"),
                    device.get("unit_id"),
                    int(device.get("is_online", True)),
                    int(device.get("remote_operation_enabled", True)),
                    device.get("external_id"),
                    json.dumps(metadata) if metadata else None,
                ),
            )

    def get_device_row(self, device_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as db:
            row = db.execute("SELECT * FROM Devices WHERE device_id = ?", (device_id,)).fetchone()
            return _device_row(row) if row is not None else None

    def list_device_rows(self, vendor: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM Devices"
        params: List[Any] = []
        if vendor:
            query += " WHERE vendor = ?"
            params.append(vendor)
        query += " ORDER BY device_id"
        with self.connection() as db:
            return [_device_row(r) for r in db.execute(query, params)]

    def update_device_fields(self, device_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - _UPDATABLE_DEVICE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown device fields: {sorted(unknown)}")
        if not fields:
            return False
        values: List[Any] = []
        assignments = []
        for column, value in fields.items():
            if column == "metadata":
                value = json.dumps(value) if value else None
            elif column in ("is_online", "remote_operation_enabled"):
                value = int(bool(value))
            assignments.append(f"{column} = ?")
            values.append(value)
        values.append(device_id)
        with self.connection() as db:
            cur = db.execute(f"UPDATE Devices SET {', '.join(assignments)} WHERE device_id = ?", values)
            return cur.rowcount > 0

    def delete_device(self, device_id: str) -> bool:
        with self.connection() as db:
            db.execute("DELETE FROM GuestGrantDevices WHERE device_id = ?", (device_id,))
            return db.execute("DELETE FROM Devices WHERE device_id = ?", (device_id,)).rowcount > 0
