from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from app.domain.roles import GuestGrant, RoleAssociation
from app.enums.access import EntityType, Role
from app.services.protocols import RoleAssociationStore
from app.utils.cache import TTLCache
from app.utils.time import coerce_datetime, to_db_timestamp
from infrastructure.database.ops.roles import RoleOperations
from infrastructure.database.repositories.base import translate_db_errors

logger = logging.getLogger(__name__)


def _grant_from_row(row: dict[str, Any]) -> GuestGrant:
    return GuestGrant(
        actor_id=row["actor_id"],
        valid_from=coerce_datetime(row["valid_from"]),
        valid_until=coerce_datetime(row["valid_until"]),
        device_ids=frozenset(row["device_ids"]),
        grant_id=row["grant_id"],
        created_by=row.get("created_by"),
    )


@dataclass(frozen=True)
class RoleAssociationRepository:
    _backend: RoleOperations

    @translate_db_errors
    def get_associations(self, actor_id: str) -> list[RoleAssociation]:
        return [RoleAssociation(**row) for row in self._backend.get_role_associations(actor_id)]

    @translate_db_errors
    def get_guest_grants(self, actor_id: str) -> list[GuestGrant]:
        return [_grant_from_row(row) for row in self._backend.get_guest_grant_rows(actor_id)]

    @translate_db_errors
    def get_guest_grant(self, grant_id: int) -> GuestGrant | None:
        row = self._backend.get_guest_grant_row(grant_id)
        return _grant_from_row(row) if row else None

    @translate_db_errors
    def actors_for(self, entity_type: EntityType | str, entity_id: str) -> list[RoleAssociation]:
        entity_type = EntityType(entity_type)
        return [RoleAssociation(**row) for row in self._backend.list_actors_for_entity(entity_type.value, entity_id)]

    @translate_db_errors
    def grant_role(self, actor_id: str, entity_type: EntityType | str, entity_id: str, role: Role | str) -> RoleAssociation:
        association = RoleAssociation(actor_id, entity_type, entity_id, role)
        created = self._backend.insert_role_association(
            actor_id, association.entity_type.value, entity_id, association.role.value
        )
        if not created:
            logger.debug("Role %s for %s already present", association.describe(), actor_id)
        return association

    @translate_db_errors
    def revoke_role(self, actor_id: str, entity_type: EntityType | str, entity_id: str, role: Role | str) -> bool:
        association = RoleAssociation(actor_id, entity_type, entity_id, role)
        return self._backend.delete_role_association(
            actor_id, association.entity_type.value, entity_id, association.role.value
        )

    @translate_db_errors
    def issue_guest_grant(
        self,
        actor_id: str,
        device_ids: Iterable[str],
        valid_from: datetime,
        valid_until: datetime,
        *,
        created_by: str | None = None,
    ) -> GuestGrant:
        grant = GuestGrant(actor_id, valid_from, valid_until, frozenset(device_ids), created_by=created_by)
        grant_id = self._backend.insert_guest_grant(
            actor_id,
            to_db_timestamp(grant.valid_from),
            to_db_timestamp(grant.valid_until),
            sorted(grant.device_ids),
            created_by,
        )
        return GuestGrant(
            grant.actor_id,
            grant.valid_from,
            grant.valid_until,
            grant.device_ids,
            grant_id=grant_id,
            created_by=created_by,
        )

    @translate_db_errors
    def revoke_guest_grant(self, grant_id: int) -> bool:
        return self._backend.delete_guest_grant(grant_id)


@dataclass
class CachedRoleAssociationStore:
    """
    Read-through TTL cache in front of any role association store.

    Writes go to the wrapped store and invalidate the actor's entries. A TTL
    of zero turns caching off, so every decision reads the store.
    """

    store: RoleAssociationStore
    ttl_seconds: float = 5.0
    maxsize: int = 1024
    _cache: TTLCache = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._cache = TTLCache(enabled=self.ttl_seconds > 0, ttl_seconds=self.ttl_seconds, maxsize=self.maxsize)

    def get_associations(self, actor_id: str) -> Sequence[RoleAssociation]:
        return self._cache.get(("roles", actor_id), lambda: tuple(self.store.get_associations(actor_id)))

    def get_guest_grants(self, actor_id: str) -> Sequence[GuestGrant]:
        return self._cache.get(("grants", actor_id), lambda: tuple(self.store.get_guest_grants(actor_id)))

    def invalidate(self, actor_id: str | None = None) -> None:
        if actor_id is None:
            self._cache.clear()
            return
        self._cache.invalidate(("roles", actor_id))
        self._cache.invalidate(("grants", actor_id))

    def stats(self) -> dict[str, Any]:
        return self._cache.get_stats()

    # Administrative writes go through to the store and drop the actor's entries.
    def grant_role(self, actor_id: str, entity_type, entity_id: str, role) -> RoleAssociation:
        association = self.store.grant_role(actor_id, entity_type, entity_id, role)
        self.invalidate(actor_id)
        return association

    def revoke_role(self, actor_id: str, entity_type, entity_id: str, role) -> bool:
        removed = self.store.revoke_role(actor_id, entity_type, entity_id, role)
        self.invalidate(actor_id)
        return removed

    def get_guest_grant(self, grant_id: int) -> GuestGrant | None:
        return self.store.get_guest_grant(grant_id)

    def issue_guest_grant(self, actor_id: str, device_ids: Iterable[str], valid_from, valid_until, *, created_by=None) -> GuestGrant:
        grant = self.store.issue_guest_grant(actor_id, device_ids, valid_from, valid_until, created_by=created_by)
        self.invalidate(actor_id)
        return grant

    def revoke_guest_grant(self, grant_id: int) -> bool:
        grant = self.store.get_guest_grant(grant_id)
        removed = self.store.revoke_guest_grant(grant_id)
        if grant is not None:
            self.invalidate(grant.actor_id)
        return removed
