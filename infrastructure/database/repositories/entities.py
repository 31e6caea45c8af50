from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.domain.hierarchy import Device, Portfolio, Property, Unit
from infrastructure.database.ops.entities import EntityOperations
from infrastructure.database.repositories.base import translate_db_errors

logger = logging.getLogger(__name__)


def _device_from_row(row: dict[str, Any]) -> Device:
    return Device(
        id=row["device_id"],
        name=row["name"],
        kind=row["kind"],
        vendor=row["vendor"],
        property_id=row.get("property_id"),
        unit_id=row.get("unit_id"),
        is_online=row.get("is_online", True),
        remote_operation_enabled=row.get("remote_operation_enabled", True),
        external_id=row.get("external_id"),
        metadata=row.get("metadata") or {},
    )


@dataclass(frozen=True)
class EntityRepository:
    """Entity store over SQLite plus the administrative writes that keep it consistent."""

    _backend: EntityOperations

    # --- Entity store -----------------------------------------------------------
    @translate_db_errors
    def get_device(self, device_id: str) -> Device | None:
        row = self._backend.get_device_row(device_id)
        return _device_from_row(row) if row else None

    @translate_db_errors
    def get_unit(self, unit_id: str) -> Unit | None:
        row = self._backend.get_unit_row(unit_id)
        if row is None:
            return None
        return Unit(
            id=row["unit_id"],
            name=row["name"],
            property_id=row["property_id"],
            device_ids=tuple(row["device_ids"]),
        )

    @translate_db_errors
    def get_property(self, property_id: str) -> Property | None:
        row = self._backend.get_property_row(property_id)
        if row is None:
            return None
        return Property(
            id=row["property_id"],
            name=row["name"],
            portfolio_id=row["portfolio_id"],
            unit_ids=tuple(row["unit_ids"]),
        )

    @translate_db_errors
    def get_portfolio(self, portfolio_id: str) -> Portfolio | None:
        row = self._backend.get_portfolio_row(portfolio_id)
        if row is None:
            return None
        return Portfolio(id=row["portfolio_id"], name=row["name"], property_ids=tuple(row["property_ids"]))

    def get_portfolio_for_property(self, property_id: str) -> Portfolio | None:
        prop = self.get_property(property_id)
        if prop is None:
            return None
        return self.get_portfolio(prop.portfolio_id)

    @translate_db_errors
    def list_devices(self, vendor: str | None = None) -> list[Device]:
        return [_device_from_row(r) for r in self._backend.list_device_rows(vendor)]

    # --- Administration -------------------------------------------------------
    @translate_db_errors
    def create_portfolio(self, portfolio_id: str, name: str) -> Portfolio:
        self._backend.insert_portfolio(portfolio_id, name)
        return Portfolio(id=portfolio_id, name=name)

    @translate_db_errors
    def create_property(self, property_id: str, portfolio_id: str, name: str) -> Property:
        self._backend.insert_property(property_id, portfolio_id, name)
        return Property(id=property_id, name=name, portfolio_id=portfolio_id)

    @translate_db_errors
    def create_unit(self, unit_id: str, property_id: str, name: str) -> Unit:
        self._backend.insert_unit(unit_id, property_id, name)
        return Unit(id=unit_id, name=name, property_id=property_id)

    @translate_db_errors
    def create_device(self, device: Device) -> Device:
        """Persist *device*. A unit-attached device stores only its unit id."""
        self._backend.insert_device(
            {
                "device_id": device.id,
                "name": device.name,
                "kind": device.kind.value,
                "vendor": device.vendor,
                "property_id": device.property_id,
                "unit_id": device.unit_id,
                "is_online": device.is_online,
                "remote_operation_enabled": device.remote_operation_enabled,
                "external_id": device.external_id,
                "metadata": device.metadata,
            }
        )
        return device

    @translate_db_errors
    def update_device(self, device_id: str, **fields: Any) -> Device | None:
        """Update columns of a device (``name``, ``remote_operation_enabled``, ...)."""
        if "kind" in fields and hasattr(fields["kind"], "value"):
            fields["kind"] = fields["kind"].value
        if not self._backend.update_device_fields(device_id, fields):
            return None
        return self.get_device(device_id)

    @translate_db_errors
    def delete_device(self, device_id: str) -> bool:
        return self._backend.delete_device(device_id)

    @translate_db_errors
    def delete_unit(self, unit_id: str) -> int:
        """Delete a unit; its devices become common-area devices of its property."""
        moved = self._backend.delete_unit_reattach(unit_id)
        logger.info("Deleted unit %s; %d device(s) re-attached to its property", unit_id, moved)
        return moved

    @translate_db_errors
    def delete_property(self, property_id: str) -> int:
        """Delete a property and its units; every device below it is orphaned."""
        return self._backend.delete_property_cascade(property_id)

    @translate_db_errors
    def delete_portfolio(self, portfolio_id: str) -> int:
        return self._backend.delete_portfolio_cascade(portfolio_id)
