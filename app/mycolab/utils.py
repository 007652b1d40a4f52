from __future__ import annotations

import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in the schema is timezone=False."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from a query string, normalised to naive UTC."""
    if not raw:
        return None
    raw = raw.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
