"""UTC helpers.

Every datetime handled by TenantLock is timezone-aware UTC. Naive values
coming from vendors or the database are assumed to be UTC already.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now(*, timespec: str = "auto") -> str:
    """Current UTC time as ISO-8601 (used for error envelope timestamps)."""
    return utc_now().isoformat(timespec=timespec)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """ISO-8601 in UTC for API payloads; ``None`` passes through."""
    return None if dt is None else _as_utc(dt).isoformat()


def to_db_timestamp(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO-8601 (microseconds always present) so stored values sort as text."""
    return None if dt is None else _as_utc(dt).isoformat(timespec="microseconds")


def coerce_datetime(value: Any) -> datetime | None:
    """
    Best-effort conversion of vendor or database values to an aware UTC datetime.

    Accepts datetimes, epoch seconds and ISO-8601 strings (a trailing ``Z``
    is read as UTC). Anything else, including booleans and unparseable
    strings, yields ``None``.
    """
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
