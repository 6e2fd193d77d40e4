"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone

# Gateway timestamps above this magnitude are already milliseconds
MILLIS_THRESHOLD = 10**12


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def from_epoch(value: int | float) -> datetime:
    """Convert a gateway epoch value to an aware UTC datetime.

    Gateway timestamps are Unix seconds, but some endpoints return
    milliseconds. Values above MILLIS_THRESHOLD are treated as ms.
    """
    if value > MILLIS_THRESHOLD:
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (DB drivers may return naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
