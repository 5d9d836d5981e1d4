"""
UTC timestamp utilities.

All times inside the manager are timezone-aware UTC datetimes. The store
persists them as ISO-8601 strings; naive values read back from older rows
are assumed to be UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime, convert an aware one."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso8601(value: datetime | None) -> str | None:
    """Serialize to ISO-8601 (``None`` passes through)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso8601(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Accepts a trailing ``Z`` and already-parsed datetimes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def seconds_until(target: datetime, now: datetime | None = None) -> float:
    """Seconds from *now* until *target* (negative when already past)."""
    now = now or utc_now()
    return (ensure_utc(target) - ensure_utc(now)).total_seconds()
