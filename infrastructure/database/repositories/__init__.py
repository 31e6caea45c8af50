"""Repository facades exposing typed accessors over low-level mixins.

Base protocols are available for type-checking and dependency injection::

    from infrastructure.database.repositories.base import BaseRepository
"""

from infrastructure.database.repositories.access_records import AccessRecordRepository
from infrastructure.database.repositories.base import BaseRepository, translate_db_errors
from infrastructure.database.repositories.entities import EntityRepository
from infrastructure.database.repositories.roles import CachedRoleAssociationStore, RoleAssociationRepository

__all__ = [
    "AccessRecordRepository",
    "BaseRepository",
    "CachedRoleAssociationStore",
    "EntityRepository",
    "RoleAssociationRepository",
    "translate_db_errors",
]
