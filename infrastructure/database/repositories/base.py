"""
Base Repository Protocol
========================

Defines the minimal contract that TenantLock repositories implement and the
error translation they share.

Usage in service type hints::

    from infrastructure.database.repositories.base import BaseRepository


    class MyService:
        def __init__(self, repo: BaseRepository) -> None: ...

Tighter, consumer-side contracts (``EntityStore``, ``RoleAssociationStore``,
``DispatchJournal``) live in ``app/services/protocols.py``.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from app.domain.exceptions import RepositoryError, ValidationError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@runtime_checkable
class BaseRepository(Protocol):
    """Minimal contract shared by every repository: a ``_backend`` handle."""

    _backend: Any


def translate_db_errors(func: F) -> F:
    """Re-raise ``sqlite3`` errors as :class:`RepositoryError`.

    Constraint violations (duplicate ids, CHECK failures) become
    :class:`ValidationError` because they are caused by the caller's input.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"{func.__name__}: {exc}") from exc
        except sqlite3.Error as exc:
            logger.error("%s failed: %s", func.__qualname__, exc)
            raise RepositoryError(f"{func.__name__} failed") from exc

    return wrapper  # type: ignore[return-value]


__all__ = ["BaseRepository", "translate_db_errors"]
