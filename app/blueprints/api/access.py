"""
Access API Blueprint
====================

Thin HTTP surface over ``AccessService``:
- POST   /devices/<id>/commands     dispatch one command
- GET    /devices/<id>/status       cached (or refreshed) device state
- GET    /devices/<id>/permissions  preflight decisions
- GET    /devices/<id>/history      recent access records for the device
- GET    /audit                     filtered audit query
- POST   /guest-grants              issue a guest grant
- DELETE /guest-grants/<grant_id>   revoke a guest grant

All routes are registered under /api/access. The caller's actor id comes
from the ``X-Actor-Id`` header set by the authenticating gateway.
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response

from app.blueprints.api._common import (
    get_access_service as _service,
    get_actor_id as _actor,
    get_json as _json,
    query_args as _args,
    success as _success,
)
from app.domain.device_state import snapshot_to_dict
from app.enums.access import Operation
from app.schemas.access import (
    AccessRecordResponse,
    AuditQuery,
    CommandRequest,
    DecisionResponse,
    GuestGrantRequest,
    HistoryQuery,
)
from app.utils.http import safe_route
from app.utils.time import to_iso

access_api = Blueprint("access_api", __name__)
logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _decision_payload(device_id: str, operation: Operation, decision) -> dict:
    return DecisionResponse(
        device_id=device_id,
        operation=operation,
        allowed=decision.allowed,
        reason=decision.reason.value if decision.reason else None,
        message=decision.message,
        matched_roles=list(decision.matched_roles),
        via_guest_grant=decision.via_guest_grant,
    ).model_dump(mode="json")


def _record_payload(record) -> dict:
    return AccessRecordResponse(
        sequence=record.sequence,
        device_id=record.device_id,
        actor_id=record.actor_id,
        operation=record.operation,
        requested_at=record.requested_at,
        completed_at=record.completed_at,
        outcome=record.outcome.value,
        denial_reason=record.denial_reason.value if record.denial_reason else None,
        failure_reason=record.failure_reason,
        attempts=record.attempts,
    ).model_dump(mode="json")


# ==================== DEVICES ====================


@access_api.post("/devices/<device_id>/commands")
@safe_route("Failed to dispatch command")
def dispatch_command(device_id: str) -> Response:
    """Authorize and execute one command; returns the state observed afterwards."""
    actor_id = _actor()
    body = CommandRequest.model_validate(_json())
    snapshot = _service().dispatch(
        actor_id,
        device_id,
        body.operation,
        body.params,
        busy_policy=body.busy_policy,
    )
    return _success(snapshot_to_dict(snapshot))


@access_api.get("/devices/<device_id>/status")
@safe_route("Failed to read device status")
def device_status(device_id: str) -> Response:
    actor_id = _actor()
    refresh = _args().get("refresh", "").lower() in _TRUTHY
    snapshot = _service().get_status(actor_id, device_id, refresh=refresh)
    return _success(snapshot_to_dict(snapshot))


@access_api.get("/devices/<device_id>/permissions")
@safe_route("Failed to evaluate permissions")
def device_permissions(device_id: str) -> Response:
    """
    Preflight check.

    With ``?operation=<op>`` returns that single decision, otherwise one
    decision per operation.
    """
    actor_id = _actor()
    service = _service()
    operation = _args().get("operation")
    if operation:
        op = CommandRequest.model_validate({"operation": operation}).operation
        return _success(_decision_payload(device_id, op, service.explain(actor_id, device_id, op)))

    decisions = service.permissions(actor_id, device_id)
    return _success([_decision_payload(device_id, op, decision) for op, decision in decisions.items()])


@access_api.get("/devices/<device_id>/history")
@safe_route("Failed to load access history")
def device_history(device_id: str) -> Response:
    actor_id = _actor()
    query = HistoryQuery.model_validate(_args())
    records = _service().access_history(actor_id, device_id, query.limit)
    return _success([_record_payload(r) for r in records])


# ==================== AUDIT ====================


@access_api.get("/audit")
@safe_route("Failed to query audit log")
def audit_query() -> Response:
    actor_id = _actor()
    query = AuditQuery.model_validate(_args())
    records = _service().audit_query(
        actor_id,
        device_id=query.device_id,
        subject_id=query.actor_id,
        since=query.since,
        until=query.until,
        limit=query.limit,
    )
    return _success([_record_payload(r) for r in records])


# ==================== GUEST GRANTS ====================


@access_api.post("/guest-grants")
@safe_route("Failed to issue guest grant")
def issue_guest_grant() -> Response:
    actor_id = _actor()
    body = GuestGrantRequest.model_validate(_json())
    grant = _service().issue_guest_grant(
        actor_id,
        body.actor_id,
        body.device_ids,
        body.valid_from,
        body.valid_until,
    )
    return _success(
        {
            "grant_id": grant.grant_id,
            "actor_id": grant.actor_id,
            "device_ids": sorted(grant.device_ids),
            "valid_from": to_iso(grant.valid_from),
            "valid_until": to_iso(grant.valid_until),
            "created_by": grant.created_by,
        },
        201,
    )


@access_api.delete("/guest-grants/<int:grant_id>")
@safe_route("Failed to revoke guest grant")
def revoke_guest_grant(grant_id: int) -> Response:
    actor_id = _actor()
    _service().revoke_guest_grant(actor_id, grant_id)
    return _success({"grant_id": grant_id}, message="Guest grant revoked")
