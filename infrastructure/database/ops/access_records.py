from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "device_id",
    "actor_id",
    "operation",
    "requested_at",
    "completed_at",
    "outcome",
    "denial_reason",
    "failure_reason",
    "attempts",
    "details",
)


def _decode_details(row) -> Dict[str, Any]:
    data = dict(row)
    raw = data.get("details")
    if raw:
        try:
            data["details"] = json.loads(raw)
        except json.JSONDecodeError:
            data["details"] = {"raw": raw}
    else:
        data["details"] = {}
    return data


def _insert_record(db, record: Dict[str, Any]) -> int:
    details = record.get("details")
    cur = db.execute(
        f"INSERT INTO AccessRecords ({', '.join(_RECORD_COLUMNS)}) VALUES ({', '.join('?' * len(_RECORD_COLUMNS))})",
        (
            record["device_id"],
            record["actor_id"],
            record["operation"],
            record["requested_at"],
            record.get("completed_at"),
            record["outcome"],
            record.get("denial_reason"),
            record.get("failure_reason"),
            int(record.get("attempts") or 0),
            json.dumps(details, default=str, sort_keys=True) if details else None,
        ),
    )
    return cur.lastrowid


class AccessRecordOperations:
    """Database operations for the append-only AccessRecords table and dispatch intents."""

    def insert_access_record(self, record: Dict[str, Any]) -> int:
        """Append one record; returns its sequence number."""
        with self.connection() as db:
            return _insert_record(db, record)

    def query_access_records(
        self,
        *,
        device_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM AccessRecords WHERE 1=1"
        params: List[Any] = []
        if device_id:
            query += " AND device_id = ?"
            params.append(device_id)
        if actor_id:
            query += " AND actor_id = ?"
            params.append(actor_id)
        if since:
            query += " AND requested_at >= ?"
            params.append(since)
        if until:
            query += " AND requested_at <= ?"
            params.append(until)
        query += " ORDER BY sequence DESC" if newest_first else " ORDER BY sequence ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self.connection() as db:
            return [_decode_details(r) for r in db.execute(query, params)]

    def get_access_statistics(self) -> Dict[str, Any]:
        with self.connection() as db:
            total = db.execute("SELECT COUNT(*) AS n FROM AccessRecords").fetchone()["n"]
            by_outcome = {
                r["outcome"]: r["n"]
                for r in db.execute("SELECT outcome, COUNT(*) AS n FROM AccessRecords GROUP BY outcome")
            }
            by_denial = {
                r["denial_reason"]: r["n"]
                for r in db.execute(
                    "SELECT denial_reason, COUNT(*) AS n FROM AccessRecords "
                    "WHERE denial_reason IS NOT NULL GROUP BY denial_reason"
                )
            }
            by_failure = {
                r["failure_reason"]: r["n"]
                for r in db.execute(
                    "SELECT failure_reason, COUNT(*) AS n FROM AccessRecords "
                    "WHERE failure_reason IS NOT NULL GROUP BY failure_reason"
                )
            }
            pending = db.execute("SELECT COUNT(*) AS n FROM DispatchIntents").fetchone()["n"]
        return {
            "total": total,
            "by_outcome": by_outcome,
            "by_denial_reason": by_denial,
            "by_failure_reason": by_failure,
            "pending_intents": pending,
        }

    # --- Write-ahead intents --------------------------------------------------
    def insert_dispatch_intent(self, intent: Dict[str, Any]) -> int:
        details = intent.get("details")
        with self.connection() as db:
            cur = db.execute(
                """
                INSERT INTO DispatchIntents (device_id, actor_id, operation, requested_at, details)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    intent["device_id"],
                    intent["actor_id"],
                    intent["operation"],
                    intent["requested_at"],
                    json.dumps(details, default=str, sort_keys=True) if details else None,
                ),
            )
            return cur.lastrowid

    def complete_dispatch_intent(self, intent_id: int, record: Dict[str, Any]) -> int:
        """Append the final record and drop the intent in one transaction."""
        with self.connection() as db:
            sequence = _insert_record(db, record)
            db.execute("DELETE FROM DispatchIntents WHERE intent_id = ?", (intent_id,))
            return sequence

    def list_dispatch_intents(self) -> List[Dict[str, Any]]:
        with self.connection() as db:
            return [_decode_details(r) for r in db.execute("SELECT * FROM DispatchIntents ORDER BY intent_id")]
