"""
Ownership Hierarchy Entities

Portfolio → Property → Unit → Device records and the resolved containment
chain used by the authorization engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from app.enums.access import DeviceKind


@dataclass(frozen=True)
class Portfolio:
    id: str
    name: str
    property_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Property:
    id: str
    name: str
    portfolio_id: str
    unit_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unit:
    id: str
    name: str
    property_id: str
    device_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Device:
    """
    A single device record.

    A device hangs off exactly one Unit, or directly off a Property for
    common-area hardware, never both. ``kind`` selects the payload type of
    its snapshots; ``vendor`` selects the adapter that talks to it.
    """

    id: str
    name: str
    kind: DeviceKind
    vendor: str
    property_id: str | None = None
    unit_id: str | None = None
    is_online: bool = True
    remote_operation_enabled: bool = True
    external_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.property_id and self.unit_id:
            raise ValueError(
                f"Device {self.id} cannot be attached to both unit {self.unit_id} and property {self.property_id}"
            )
        if not isinstance(self.kind, DeviceKind):
            object.__setattr__(self, "kind", DeviceKind(self.kind))
        if self.vendor != self.vendor.lower():
            object.__setattr__(self, "vendor", self.vendor.lower())

    @property
    def vendor_device_id(self) -> str:
        """Identifier the vendor API knows this device by."""
        return self.external_id or self.id

    @property
    def is_common_area(self) -> bool:
        return self.unit_id is None and self.property_id is not None

    @property
    def is_orphaned(self) -> bool:
        return self.unit_id is None and self.property_id is None

    def with_connectivity(self, is_online: bool) -> "Device":
        if is_online == self.is_online:
            return self
        return replace(self, is_online=is_online)


@dataclass(frozen=True)
class ContainmentChain:
    """Resolved ancestors of a device: Unit (optional), Property, Portfolio."""

    device_id: str
    property_id: str
    portfolio_id: str
    unit_id: str | None = None

    def ancestor_ids(self) -> tuple[str, ...]:
        ids = (self.unit_id, self.property_id, self.portfolio_id)
        return tuple(i for i in ids if i)
