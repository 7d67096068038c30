"""Time helpers shared by models and services."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime for DB columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def age_ms(since: datetime | None, *, now: datetime | None = None) -> float:
    """Milliseconds elapsed since `since`; infinite when the timestamp is unknown."""
    if since is None:
        return float("inf")
    current = now or utcnow()
    if since.tzinfo is not None:
        since = since.astimezone(UTC).replace(tzinfo=None)
    return (current - since).total_seconds() * 1000
