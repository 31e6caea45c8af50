"""
Role → permission table.

Each role is effective only at the level of the hierarchy it belongs to:
a Tenant on a Unit, a PropertyManager on a Property, a PortfolioAdmin or
Owner on a Portfolio. An association stored at any other level grants
nothing.
"""

from __future__ import annotations

from app.enums.access import EntityType, Operation, PermissionCategory, Role

ROLE_SCOPES: dict[Role, EntityType] = {
    Role.TENANT: EntityType.UNIT,
    Role.PROPERTY_MANAGER: EntityType.PROPERTY,
    Role.PORTFOLIO_ADMIN: EntityType.PORTFOLIO,
    Role.OWNER: EntityType.PORTFOLIO,
}

_ALL_CATEGORIES = frozenset(PermissionCategory)

ROLE_PERMISSIONS: dict[Role, frozenset[PermissionCategory]] = {
    Role.TENANT: frozenset({PermissionCategory.READ_STATUS, PermissionCategory.ACTUATE}),
    Role.PROPERTY_MANAGER: _ALL_CATEGORIES,
    Role.PORTFOLIO_ADMIN: _ALL_CATEGORIES,
    Role.OWNER: _ALL_CATEGORIES,
    # Guest access only ever comes from a time-boxed grant.
    Role.GUEST: frozenset(),
}

GUEST_OPERATIONS: frozenset[Operation] = frozenset(
    {Operation.READ_STATUS, Operation.LOCK, Operation.UNLOCK}
)

# Roles allowed to issue and revoke guest grants, at their natural scope.
GRANT_MANAGER_ROLES: frozenset[Role] = frozenset(
    {Role.PROPERTY_MANAGER, Role.PORTFOLIO_ADMIN, Role.OWNER}
)


def is_effective(role: Role, entity_type: EntityType) -> bool:
    return ROLE_SCOPES.get(role) == entity_type


def categories_for(role: Role) -> frozenset[PermissionCategory]:
    return ROLE_PERMISSIONS.get(role, frozenset())
