"""
Audit Log
=========

Append-only access history. The journal (SQLite by default) is the durable
store and the source of truth; every record written there is mirrored to
the JSON-lines audit file.

Dispatches that reach a vendor use a write-ahead intent: ``begin`` stores a
provisional marker before the adapter is called and ``complete`` replaces it
with the final record in one transaction. Intents still present at start-up
belong to dispatches interrupted by a crash and are closed by ``recover``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from app.domain.access import AccessRecord

if TYPE_CHECKING:
    from app.services.protocols import DispatchJournal
    from infrastructure.logging.audit import AuditLogger

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, journal: "DispatchJournal", mirror: "AuditLogger | None" = None):
        self.journal = journal
        self.mirror = mirror

    def _mirror(self, record: AccessRecord) -> None:
        if self.mirror is None:
            return
        self.mirror.log_event(
            actor=record.actor_id,
            action=record.operation.value,
            resource=f"device:{record.device_id}",
            outcome=record.outcome.value,
            sequence=record.sequence,
            requested_at=record.requested_at,
            completed_at=record.completed_at,
            denial_reason=record.denial_reason.value if record.denial_reason else None,
            failure_reason=record.failure_reason,
            attempts=record.attempts,
        )

    def record(self, record: AccessRecord) -> AccessRecord:
        """Append a final record that never had an intent (denials, busy, status reads)."""
        saved = self.journal.append(record)
        self._mirror(saved)
        return saved

    def begin(self, provisional: AccessRecord) -> int:
        return self.journal.begin_intent(provisional)

    def complete(self, intent_id: int, record: AccessRecord) -> AccessRecord:
        saved = self.journal.complete_intent(intent_id, record)
        self._mirror(saved)
        return saved

    def recover(self) -> list[AccessRecord]:
        """Close intents left behind by an interrupted process."""
        recovered = list(self.journal.recover_incomplete())
        for record in recovered:
            logger.warning(
                "Recovered interrupted dispatch: %s on %s by %s requested at %s",
                record.operation.value,
                record.device_id,
                record.actor_id,
                record.requested_at,
            )
            self._mirror(record)
        return recovered

    def query(
        self,
        *,
        device_id: str | None = None,
        actor_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AccessRecord]:
        return self.journal.query(device_id=device_id, actor_id=actor_id, since=since, until=until, limit=limit)

    def history(self, device_id: str, limit: int = 50) -> list[AccessRecord]:
        """Most recent records for one device, newest first."""
        return self.journal.history(device_id, limit)
