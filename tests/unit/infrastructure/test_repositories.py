from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.access import AccessRecord
from app.domain.exceptions import ValidationError
from app.domain.hierarchy import Device
from app.enums.access import AccessOutcome, DenialReason, DeviceKind, EntityType, Operation, Role
from infrastructure.database.repositories.roles import CachedRoleAssociationStore

T0 = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _record(device_id="D1", actor_id="eve", outcome=AccessOutcome.GRANTED_SUCCESS, **kwargs):
    if outcome == AccessOutcome.DENIED:
        kwargs.setdefault("denial_reason", DenialReason.NO_MATCHING_ROLE)
    return AccessRecord(
        device_id=device_id,
        actor_id=actor_id,
        operation=kwargs.pop("operation", Operation.UNLOCK),
        requested_at=kwargs.pop("requested_at", T0),
        outcome=outcome,
        completed_at=kwargs.pop("completed_at", T0 + timedelta(milliseconds=250)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def test_hierarchy_reads(seeded):
    assert seeded.get_unit("u1").device_ids == ("D1", "T1")
    assert seeded.get_property("prop-elm").unit_ids == ("u1", "u2")
    assert seeded.get_portfolio("pf-harbor").property_ids == ("prop-elm",)
    assert seeded.get_portfolio_for_property("prop-elm").id == "pf-harbor"
    assert seeded.get_device("nope") is None


def test_device_round_trip(entity_repo):
    entity_repo.create_portfolio("pf", "PF")
    entity_repo.create_property("p", "pf", "P")
    device = Device(
        "Z1",
        "Gate",
        DeviceKind.SWITCH,
        "Zigbee",
        property_id="p",
        remote_operation_enabled=False,
        external_id="gate_relay",
        metadata={"floor": 0},
    )
    entity_repo.create_device(device)

    stored = entity_repo.get_device("Z1")

    assert stored == device
    assert stored.vendor == "zigbee"
    assert stored.metadata == {"floor": 0}
    assert stored.vendor_device_id == "gate_relay"


def test_device_cannot_have_two_parents(db_connection, seeded):
    with pytest.raises(sqlite3.IntegrityError):
        db_connection.execute(
            "INSERT INTO Devices (device_id, name, kind, vendor, property_id, unit_id) VALUES (?, ?, ?, ?, ?, ?)",
            ("X", "x", "lock", "simulated", "prop-elm", "u1"),
        )

    with pytest.raises(ValidationError):
        seeded.update_device("D1", property_id="prop-elm")


def test_duplicate_ids_are_validation_errors(seeded):
    with pytest.raises(ValidationError):
        seeded.create_unit("u1", "prop-elm", "Again")


def test_list_devices_by_vendor(seeded, entity_repo):
    entity_repo.create_device(Device("A1", "Other", DeviceKind.LOCK, "acme", unit_id="u1"))

    assert [d.id for d in seeded.list_devices(vendor="acme")] == ["A1"]
    assert len(seeded.list_devices()) == 7


def test_update_device(seeded):
    updated = seeded.update_device("D1", name="Main door", remote_operation_enabled=False)

    assert updated.name == "Main door"
    assert updated.remote_operation_enabled is False
    assert seeded.update_device("nope", name="x") is None


def test_deleting_a_unit_reattaches_devices_to_the_property(seeded, role_repo):
    assert seeded.delete_unit("u1") == 2

    door = seeded.get_device("D1")
    assert door.unit_id is None
    assert door.property_id == "prop-elm"
    assert seeded.get_unit("u1") is None
    assert role_repo.get_associations("eve") == []


def test_deleting_a_property_orphans_devices(seeded):
    assert seeded.delete_property("prop-elm") == 5

    assert seeded.get_device("D1").is_orphaned
    assert seeded.get_device("L1").is_orphaned
    assert seeded.get_unit("u2") is None
    assert seeded.get_portfolio("pf-harbor").property_ids == ()


def test_deleting_a_portfolio_cascades(seeded, role_repo):
    assert seeded.delete_portfolio("pf-other") == 1

    assert seeded.get_device("D9").is_orphaned
    assert seeded.get_property("prop-oak") is None
    assert role_repo.get_associations("otto") == []
    assert seeded.get_device("D1").unit_id == "u1"


def test_deleting_a_device_removes_it_from_guest_grants(seeded, role_repo):
    grant = role_repo.issue_guest_grant("gus", ["D1", "L1"], T0, T0 + timedelta(hours=1))

    assert seeded.delete_device("D1")
    assert not seeded.delete_device("D1")

    assert role_repo.get_guest_grant(grant.grant_id).device_ids == frozenset({"L1"})


# ---------------------------------------------------------------------------
# Roles & guest grants
# ---------------------------------------------------------------------------


def test_grant_role_is_idempotent(seeded, role_repo):
    role_repo.grant_role("eve", "unit", "u1", "tenant")

    assert len(role_repo.get_associations("eve")) == 1
    assert [a.actor_id for a in role_repo.actors_for(EntityType.PROPERTY, "prop-elm")] == ["pat"]


def test_revoke_role(seeded, role_repo):
    assert role_repo.revoke_role("eve", EntityType.UNIT, "u1", Role.TENANT)
    assert not role_repo.revoke_role("eve", EntityType.UNIT, "u1", Role.TENANT)


def test_guest_grant_round_trip(role_repo):
    grant = role_repo.issue_guest_grant("gus", ["D2", "D1"], T0, T0 + timedelta(hours=2), created_by="pat")

    [stored] = role_repo.get_guest_grants("gus")

    assert stored == grant
    assert stored.valid_from == T0
    assert stored.created_by == "pat"
    assert role_repo.revoke_guest_grant(grant.grant_id)
    assert role_repo.get_guest_grants("gus") == []


def test_cached_store_serves_reads_until_invalidated(seeded, role_repo):
    store = CachedRoleAssociationStore(role_repo, ttl_seconds=60)
    assert len(store.get_associations("eve")) == 1

    role_repo.grant_role("eve", EntityType.UNIT, "u2", Role.TENANT)
    assert len(store.get_associations("eve")) == 1

    store.invalidate("eve")
    assert len(store.get_associations("eve")) == 2


def test_cached_store_writes_invalidate(seeded, role_repo):
    store = CachedRoleAssociationStore(role_repo, ttl_seconds=60)
    store.get_associations("eve")
    store.get_guest_grants("gus")

    store.revoke_role("eve", EntityType.UNIT, "u1", Role.TENANT)
    grant = store.issue_guest_grant("gus", ["D1"], T0, T0 + timedelta(hours=1))

    assert store.get_associations("eve") == ()
    assert [g.grant_id for g in store.get_guest_grants("gus")] == [grant.grant_id]

    store.revoke_guest_grant(grant.grant_id)
    assert store.get_guest_grants("gus") == ()


# ---------------------------------------------------------------------------
# Access records
# ---------------------------------------------------------------------------


def test_append_assigns_increasing_sequence(access_record_repo):
    first = access_record_repo.append(_record())
    second = access_record_repo.append(_record(outcome=AccessOutcome.DENIED, actor_id="tia"))

    assert second.sequence > first.sequence
    assert access_record_repo.query() == [first, second]
    assert access_record_repo.query(actor_id="tia") == [second]


def test_stored_record_keeps_every_field(access_record_repo):
    record = _record(
        outcome=AccessOutcome.GRANTED_FAILURE,
        failure_reason="rate_limited",
        attempts=3,
        details={"vendor_reason": "slow down"},
    )

    [stored] = [access_record_repo.append(record)]
    [loaded] = access_record_repo.query()

    assert loaded == stored
    assert loaded.completed_at == record.completed_at
    assert loaded.details == {"vendor_reason": "slow down"}


def test_history_is_newest_first_and_limited(access_record_repo):
    for op in (Operation.LOCK, Operation.UNLOCK, Operation.LOCK):
        access_record_repo.append(_record(operation=op))
    access_record_repo.append(_record(device_id="D2"))

    history = access_record_repo.history("D1", limit=2)

    assert [r.sequence for r in history] == [3, 2]


def test_query_time_window(access_record_repo):
    access_record_repo.append(_record(requested_at=T0))
    access_record_repo.append(_record(requested_at=T0 + timedelta(minutes=5)))

    assert len(access_record_repo.query(since=T0 + timedelta(minutes=5))) == 1
    assert len(access_record_repo.query(until=T0)) == 1
    assert len(access_record_repo.query(limit=1)) == 1


@pytest.mark.parametrize(
    "statement",
    [
        "UPDATE AccessRecords SET outcome = 'granted_success'",
        "DELETE FROM AccessRecords",
    ],
)
def test_access_records_are_immutable(access_record_repo, db_connection, statement):
    access_record_repo.append(_record(outcome=AccessOutcome.DENIED))

    with pytest.raises(sqlite3.DatabaseError):
        db_connection.execute(statement)


def test_intent_is_replaced_by_final_record(access_record_repo, db_handler):
    intent_id = access_record_repo.begin_intent(_record(details={"params": {}}))
    assert len(db_handler.list_dispatch_intents()) == 1

    final = access_record_repo.complete_intent(intent_id, _record(attempts=1))

    assert db_handler.list_dispatch_intents() == []
    assert access_record_repo.query() == [final]


def test_recover_incomplete_closes_leftover_intents(access_record_repo):
    access_record_repo.begin_intent(_record(details={"params": {"brightness": 10}}))

    [recovered] = access_record_repo.recover_incomplete()

    assert recovered.outcome == AccessOutcome.GRANTED_FAILURE
    assert recovered.failure_reason == "interrupted"
    assert recovered.details == {"params": {"brightness": 10}, "recovered": True}
    assert access_record_repo.recover_incomplete() == []


def test_statistics(access_record_repo):
    access_record_repo.append(_record())
    access_record_repo.append(_record(outcome=AccessOutcome.DENIED))
    access_record_repo.append(_record(outcome=AccessOutcome.GRANTED_FAILURE, failure_reason="busy"))
    access_record_repo.begin_intent(_record())

    stats = access_record_repo.statistics()

    assert stats["total"] == 3
    assert stats["by_outcome"] == {"granted_success": 1, "denied": 1, "granted_failure": 1}
    assert stats["by_denial_reason"] == {"no_matching_role": 1}
    assert stats["by_failure_reason"] == {"busy": 1}
    assert stats["pending_intents"] == 1
