from datetime import datetime, timedelta, timezone

import pytest

from app.domain.exceptions import ConfigurationError
from app.security.credentials import CachingCredentialProvider, Credential, StaticCredentialProvider


def test_static_provider_returns_configured_token():
    provider = StaticCredentialProvider({"acme": "secret"})

    credential = provider.get_credential("acme")

    assert credential.authorization_header() == "Bearer secret"
    assert "secret" not in repr(credential)


def test_static_provider_unknown_vendor():
    with pytest.raises(ConfigurationError):
        StaticCredentialProvider({}).get_credential("acme")


def test_refresh_without_hook_reuses_token():
    provider = StaticCredentialProvider({"acme": "secret"})

    assert provider.refresh("acme").token == "secret"


def test_refresh_hook_replaces_token():
    provider = StaticCredentialProvider(
        {"acme": "old"}, refresh_hook=lambda vendor, scope: Credential(vendor=vendor, token=f"new-{scope}")
    )

    provider.refresh("acme", "building-7")

    assert provider.get_credential("acme").token == "new-building-7"


def test_from_env():
    environ = {"TENANTLOCK_CREDENTIAL_ACME": "a", "TENANTLOCK_CREDENTIAL_EMPTY": "", "OTHER": "x"}

    provider = StaticCredentialProvider.from_env(environ=environ)

    assert provider.get_credential("acme").token == "a"
    with pytest.raises(ConfigurationError):
        provider.get_credential("empty")


def test_expiry():
    now = datetime(2026, 3, 14, tzinfo=timezone.utc)
    credential = Credential(vendor="acme", token="t", expires_at=now)

    assert credential.is_expired(now)
    assert not credential.is_expired(now - timedelta(seconds=1))
    assert not Credential(vendor="acme", token="t").is_expired(now)


class CountingProvider(StaticCredentialProvider):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookups = 0

    def get_credential(self, vendor, scope=None):
        self.lookups += 1
        return super().get_credential(vendor, scope)


def test_caching_provider_serves_from_cache():
    inner = CountingProvider({"acme": "secret"})
    provider = CachingCredentialProvider(inner, ttl_seconds=60)

    provider.get_credential("acme")
    provider.get_credential("acme")

    assert inner.lookups == 1
    assert provider.get_stats()["hits"] == 1


def test_caching_provider_reloads_expired_credentials():
    expired = Credential(vendor="acme", token="old", expires_at=datetime(2000, 1, 1, tzinfo=timezone.utc))
    inner = CountingProvider({"acme": "secret"})
    provider = CachingCredentialProvider(inner, ttl_seconds=60)
    provider._cache.set(("acme", None), expired)

    assert provider.get_credential("acme").token == "secret"
    assert inner.lookups == 1


def test_caching_provider_refresh_repopulates():
    inner = StaticCredentialProvider(
        {"acme": "old"}, refresh_hook=lambda vendor, scope: Credential(vendor=vendor, token="new")
    )
    provider = CachingCredentialProvider(inner, ttl_seconds=60)
    provider.get_credential("acme")

    provider.refresh("acme")

    assert provider.get_credential("acme").token == "new"
