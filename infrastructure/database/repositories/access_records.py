from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from app.domain.access import AccessRecord
from app.enums.access import AccessOutcome, FailureReason
from app.utils.time import coerce_datetime, to_db_timestamp, utc_now
from infrastructure.database.ops.access_records import AccessRecordOperations
from infrastructure.database.repositories.base import translate_db_errors

logger = logging.getLogger(__name__)


def _record_to_row(record: AccessRecord) -> dict[str, Any]:
    return {
        "device_id": record.device_id,
        "actor_id": record.actor_id,
        "operation": record.operation.value,
        "requested_at": to_db_timestamp(record.requested_at),
        "completed_at": to_db_timestamp(record.completed_at),
        "outcome": record.outcome.value,
        "denial_reason": record.denial_reason.value if record.denial_reason else None,
        "failure_reason": record.failure_reason,
        "attempts": record.attempts,
        "details": dict(record.details),
    }


def _record_from_row(row: dict[str, Any]) -> AccessRecord:
    return AccessRecord(
        device_id=row["device_id"],
        actor_id=row["actor_id"],
        operation=row["operation"],
        requested_at=coerce_datetime(row["requested_at"]),
        outcome=row["outcome"],
        denial_reason=row.get("denial_reason"),
        failure_reason=row.get("failure_reason"),
        completed_at=coerce_datetime(row.get("completed_at")),
        attempts=row.get("attempts") or 0,
        details=row.get("details") or {},
        sequence=row["sequence"],
    )


@dataclass(frozen=True)
class AccessRecordRepository:
    """Append-only audit store with write-ahead dispatch intents."""

    _backend: AccessRecordOperations

    @translate_db_errors
    def append(self, record: AccessRecord) -> AccessRecord:
        sequence = self._backend.insert_access_record(_record_to_row(record))
        return replace(record, sequence=sequence)

    @translate_db_errors
    def query(
        self,
        *,
        device_id: str | None = None,
        actor_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AccessRecord]:
        """Records matching the filters in append order (oldest first)."""
        rows = self._backend.query_access_records(
            device_id=device_id,
            actor_id=actor_id,
            since=to_db_timestamp(since),
            until=to_db_timestamp(until),
            limit=limit,
        )
        return [_record_from_row(r) for r in rows]

    @translate_db_errors
    def history(self, device_id: str, limit: int = 50) -> list[AccessRecord]:
        """Most recent records for one device, newest first."""
        rows = self._backend.query_access_records(device_id=device_id, limit=limit, newest_first=True)
        return [_record_from_row(r) for r in rows]

    @translate_db_errors
    def statistics(self) -> dict[str, Any]:
        return self._backend.get_access_statistics()

    # --- Write-ahead intents --------------------------------------------------
    @translate_db_errors
    def begin_intent(self, record: AccessRecord) -> int:
        return self._backend.insert_dispatch_intent(
            {
                "device_id": record.device_id,
                "actor_id": record.actor_id,
                "operation": record.operation.value,
                "requested_at": to_db_timestamp(record.requested_at),
                "details": dict(record.details),
            }
        )

    @translate_db_errors
    def complete_intent(self, intent_id: int, record: AccessRecord) -> AccessRecord:
        sequence = self._backend.complete_dispatch_intent(intent_id, _record_to_row(record))
        return replace(record, sequence=sequence)

    @translate_db_errors
    def recover_incomplete(self) -> list[AccessRecord]:
        """Close every leftover intent with a ``granted_failure`` / ``interrupted`` record."""
        recovered = []
        for intent in self._backend.list_dispatch_intents():
            details = dict(intent.get("details") or {})
            details["recovered"] = True
            record = AccessRecord(
                device_id=intent["device_id"],
                actor_id=intent["actor_id"],
                operation=intent["operation"],
                requested_at=coerce_datetime(intent["requested_at"]),
                outcome=AccessOutcome.GRANTED_FAILURE,
                failure_reason=FailureReason.INTERRUPTED.value,
                completed_at=utc_now(),
                details=details,
            )
            recovered.append(self.complete_intent(intent["intent_id"], record))
        return recovered
