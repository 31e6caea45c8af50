"""
Shared test fixtures for the TenantLock test suite.

Provides:
- In-memory SQLite database with all tables created
- Repository instances wired to the test database
- A seeded ownership hierarchy (one portfolio, one property, two units)
- A simulated vendor adapter registry
- A fully wired dispatcher / access service with zero retry backoff

Seeded hierarchy::

    pf-harbor (owner olga, portfolio_admin ada)
    └── prop-elm (property_manager pat)
        ├── u1 (tenant eve)      D1 lock, T1 thermostat
        ├── u2 (tenant tia)      D2 lock
        └── common area          D3 lock (remote operation disabled), L1 light
    pf-other
    └── prop-oak
        └── u9 (tenant otto)     D9 lock

Usage:
    def test_example(dispatcher, adapter):
        dispatcher.dispatch("eve", "D1", "unlock")
        assert adapter.execute_calls
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.hierarchy import Device
from app.enums.access import DeviceKind, EntityType, LockState, Role
from app.domain.device_state import LockPayload
from app.hardware.adapters.registry import AdapterRegistry
from app.hardware.adapters.simulated_adapter import SimulatedAdapter
from app.services.access_service import AccessService
from app.services.audit_log import AuditLog
from app.services.authorization.engine import AuthorizationEngine
from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.dispatcher import CommandDispatcher, DispatchSettings
from app.services.dispatch.retry import RetryPolicy
from app.services.state_cache import DeviceStateCache
from infrastructure.database.repositories.access_records import AccessRecordRepository
from infrastructure.database.repositories.entities import EntityRepository
from infrastructure.database.repositories.roles import CachedRoleAssociationStore, RoleAssociationRepository

# ---------------------------------------------------------------------------
# Database & Repositories
# ---------------------------------------------------------------------------
from infrastructure.database.sqlite_handler import SQLiteDatabaseHandler

# ---------------------------------------------------------------------------
# Logging: keep test output clean
# ---------------------------------------------------------------------------
logging.getLogger("infrastructure").setLevel(logging.WARNING)
logging.getLogger("app").setLevel(logging.WARNING)

VENDOR = "simulated"
NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


# ========================== Database Fixtures ==============================


@pytest.fixture()
def db_handler():
    """In-memory SQLite database with all tables created.

    Each test gets a fresh database; no cross-test contamination.
    """
    handler = SQLiteDatabaseHandler(":memory:")
    handler.create_tables()
    yield handler
    handler.close()


@pytest.fixture()
def db_connection(db_handler):
    """Raw sqlite3 connection for direct SQL in tests."""
    with db_handler.connection() as conn:
        yield conn


# ========================== Repository Fixtures ============================


@pytest.fixture()
def entity_repo(db_handler):
    """EntityRepository backed by the in-memory DB."""
    return EntityRepository(db_handler)


@pytest.fixture()
def role_repo(db_handler):
    """RoleAssociationRepository backed by the in-memory DB."""
    return RoleAssociationRepository(db_handler)


@pytest.fixture()
def role_store(role_repo):
    """Uncached role store so grants and revocations apply immediately."""
    return CachedRoleAssociationStore(role_repo, ttl_seconds=0)


@pytest.fixture()
def access_record_repo(db_handler):
    """AccessRecordRepository backed by the in-memory DB."""
    return AccessRecordRepository(db_handler)


# ========================== Seed Data ======================================


def seed_hierarchy(entity_repo, role_repo) -> None:
    entity_repo.create_portfolio("pf-harbor", "Harbor Holdings")
    entity_repo.create_property("prop-elm", "pf-harbor", "12 Elm Street")
    entity_repo.create_unit("u1", "prop-elm", "Apartment 1")
    entity_repo.create_unit("u2", "prop-elm", "Apartment 2")

    entity_repo.create_device(Device("D1", "Front door", DeviceKind.LOCK, VENDOR, unit_id="u1"))
    entity_repo.create_device(Device("T1", "Hall thermostat", DeviceKind.THERMOSTAT, VENDOR, unit_id="u1"))
    entity_repo.create_device(Device("D2", "Front door", DeviceKind.LOCK, VENDOR, unit_id="u2"))
    entity_repo.create_device(
        Device("D3", "Bike room", DeviceKind.LOCK, VENDOR, property_id="prop-elm", remote_operation_enabled=False)
    )
    entity_repo.create_device(Device("L1", "Lobby light", DeviceKind.LIGHT, VENDOR, property_id="prop-elm"))

    entity_repo.create_portfolio("pf-other", "Other Estates")
    entity_repo.create_property("prop-oak", "pf-other", "3 Oak Lane")
    entity_repo.create_unit("u9", "prop-oak", "Flat 9")
    entity_repo.create_device(Device("D9", "Front door", DeviceKind.LOCK, VENDOR, unit_id="u9"))

    role_repo.grant_role("olga", EntityType.PORTFOLIO, "pf-harbor", Role.OWNER)
    role_repo.grant_role("ada", EntityType.PORTFOLIO, "pf-harbor", Role.PORTFOLIO_ADMIN)
    role_repo.grant_role("pat", EntityType.PROPERTY, "prop-elm", Role.PROPERTY_MANAGER)
    role_repo.grant_role("eve", EntityType.UNIT, "u1", Role.TENANT)
    role_repo.grant_role("tia", EntityType.UNIT, "u2", Role.TENANT)
    role_repo.grant_role("otto", EntityType.UNIT, "u9", Role.TENANT)


@pytest.fixture()
def seeded(entity_repo, role_repo):
    seed_hierarchy(entity_repo, role_repo)
    return entity_repo


def build_simulated_adapter(vendor: str = VENDOR) -> SimulatedAdapter:
    adapter = SimulatedAdapter(vendor)
    locked = LockPayload(state=LockState.LOCKED, battery_level=80)
    for device_id in ("D1", "D2", "D3", "D9"):
        adapter.add_device(device_id, DeviceKind.LOCK, locked)
    adapter.add_device("T1", DeviceKind.THERMOSTAT)
    adapter.add_device("L1", DeviceKind.LIGHT)
    return adapter


@pytest.fixture()
def adapter():
    """Simulated vendor that knows every seeded device (locks start locked)."""
    return build_simulated_adapter()


@pytest.fixture()
def adapters(adapter):
    registry = AdapterRegistry()
    registry.register(adapter)
    return registry


# ========================== Service Fixtures ===============================


@pytest.fixture()
def engine(seeded, role_store):
    return AuthorizationEngine(seeded, role_store, clock=lambda: NOW)


@pytest.fixture()
def state_cache():
    return DeviceStateCache(history_per_device=5)


@pytest.fixture()
def audit_log(access_record_repo):
    return AuditLog(access_record_repo)


@pytest.fixture()
def sleeps():
    """Backoff delays requested by the dispatcher (nothing actually sleeps)."""
    return []


@pytest.fixture()
def dispatcher(seeded, engine, adapters, state_cache, audit_log, sleeps):
    dispatcher = CommandDispatcher(
        seeded,
        engine,
        adapters,
        state_cache,
        audit_log,
        locks=DeviceLockRegistry(queue_depth=4),
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=0.5, backoff_max_seconds=8.0),
        settings=DispatchSettings(adapter_timeout_seconds=2.0, worker_count=4),
        sleep=sleeps.append,
    )
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture()
def access_service(engine, dispatcher, audit_log, role_store):
    return AccessService(engine, dispatcher, audit_log, role_store)


# ========================== Helpers ========================================


@pytest.fixture()
def guest_window():
    """A window around NOW, as (valid_from, valid_until)."""
    return NOW - timedelta(hours=1), NOW + timedelta(hours=1)


@pytest.fixture()
def now():
    """The engine's clock reading."""
    return NOW
