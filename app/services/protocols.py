"""
Service protocols (structural typing interfaces).

Protocols let the engine and dispatcher declare the *minimal* surface they
depend on without importing a concrete store, so the SQLite repositories,
cached wrappers and hand-written test fakes are interchangeable.

Usage
-----
In a consumer service::

    from __future__ import annotations
    from typing import TYPE_CHECKING
    if TYPE_CHECKING:
        from app.services.protocols import EntityStore

    class AuthorizationEngine:
        def __init__(self, entities: "EntityStore", ...): ...

At runtime ``EntityRepository`` already satisfies the protocol via
structural subtyping; no explicit inheritance needed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, Sequence, runtime_checkable

from app.domain.access import AccessRecord
from app.domain.hierarchy import Device, Portfolio, Property, Unit
from app.domain.roles import GuestGrant, RoleAssociation


@runtime_checkable
class EntityStore(Protocol):
    """Read-only view over the ownership hierarchy."""

    def get_device(self, device_id: str) -> Device | None:
        ...

    def get_unit(self, unit_id: str) -> Unit | None:
        ...

    def get_property(self, property_id: str) -> Property | None:
        ...

    def get_portfolio_for_property(self, property_id: str) -> Portfolio | None:
        ...


@runtime_checkable
class RoleAssociationStore(Protocol):
    """Read-only view over role associations and guest grants."""

    def get_associations(self, actor_id: str) -> Sequence[RoleAssociation]:
        ...

    def get_guest_grants(self, actor_id: str) -> Sequence[GuestGrant]:
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only access record store."""

    def append(self, record: AccessRecord) -> AccessRecord:
        """Persist *record* and return it with ``sequence`` assigned."""
        ...

    def query(
        self,
        *,
        device_id: str | None = None,
        actor_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AccessRecord]:
        ...


@runtime_checkable
class DispatchJournal(AuditSink, Protocol):
    """Audit sink that also keeps write-ahead intents for in-flight dispatches."""

    def history(self, device_id: str, limit: int = 50) -> list[AccessRecord]:
        """Most recent records for *device_id*, newest first."""
        ...

    def begin_intent(self, record: AccessRecord) -> int:
        ...

    def complete_intent(self, intent_id: int, record: AccessRecord) -> AccessRecord:
        ...

    def recover_incomplete(self) -> Iterable[AccessRecord]:
        ...
