"""
Vendor credential providers.

Adapters never hold long-lived secrets themselves; they ask a provider for
the current credential and ask it to refresh when the vendor reports the
credential as expired. Token refresh mechanics live behind the provider.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping

from app.domain.exceptions import ConfigurationError
from app.utils.cache import TTLCache
from app.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    vendor: str
    token: str
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    extra: dict[str, str] = field(default_factory=dict, compare=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def authorization_header(self) -> str:
        return f"{self.token_type} {self.token}".strip()

    def __repr__(self) -> str:
        return f"Credential(vendor={self.vendor!r}, token=***, expires_at={self.expires_at!r})"


class CredentialProvider(ABC):
    """Opaque source of vendor credentials."""

    @abstractmethod
    def get_credential(self, vendor: str, scope: str | None = None) -> Credential:
        """Return the current credential for *vendor* (and optional scope context)."""

    @abstractmethod
    def refresh(self, vendor: str, scope: str | None = None) -> Credential:
        """Obtain a new credential, replacing the current one."""


RefreshHook = Callable[[str, "str | None"], Credential]


class StaticCredentialProvider(CredentialProvider):
    """
    Credentials configured up front, keyed by vendor.

    ``refresh`` calls the optional hook (e.g. an OAuth client) when one is
    supplied; without it the configured token is returned again, which makes
    a second AuthExpired surface to the caller.
    """

    def __init__(self, tokens: Mapping[str, str], *, refresh_hook: RefreshHook | None = None):
        self._credentials = {vendor: Credential(vendor=vendor, token=token) for vendor, token in tokens.items()}
        self._refresh_hook = refresh_hook

    @classmethod
    def from_env(cls, prefix: str = "TENANTLOCK_CREDENTIAL_", environ: Mapping[str, str] | None = None):
        """Build from variables such as ``TENANTLOCK_CREDENTIAL_ACME=token``."""
        environ = os.environ if environ is None else environ
        tokens = {
            key[len(prefix):].lower(): value
            for key, value in environ.items()
            if key.startswith(prefix) and value
        }
        return cls(tokens)

    def get_credential(self, vendor: str, scope: str | None = None) -> Credential:
        try:
            return self._credentials[vendor]
        except KeyError:
            raise ConfigurationError(f"No credential configured for vendor '{vendor}'") from None

    def refresh(self, vendor: str, scope: str | None = None) -> Credential:
        if self._refresh_hook is None:
            logger.warning("No refresh hook for vendor %s; reusing configured credential", vendor)
            return self.get_credential(vendor, scope)
        credential = self._refresh_hook(vendor, scope)
        self._credentials[vendor] = credential
        logger.info("Refreshed credential for vendor %s", vendor)
        return credential


class CachingCredentialProvider(CredentialProvider):
    """TTL cache in front of another provider; ``refresh`` bypasses and repopulates."""

    def __init__(self, inner: CredentialProvider, *, ttl_seconds: float = 300, maxsize: int = 64):
        self._inner = inner
        self._cache = TTLCache(enabled=True, ttl_seconds=ttl_seconds, maxsize=maxsize)

    def get_credential(self, vendor: str, scope: str | None = None) -> Credential:
        key = (vendor, scope)
        credential = self._cache.get(key)
        if credential is None or credential.is_expired():
            credential = self._inner.get_credential(vendor, scope)
            self._cache.set(key, credential)
        return credential

    def refresh(self, vendor: str, scope: str | None = None) -> Credential:
        credential = self._inner.refresh(vendor, scope)
        self._cache.set((vendor, scope), credential)
        return credential

    def get_stats(self) -> dict:
        return self._cache.get_stats()
