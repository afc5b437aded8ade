"""UTC helpers shared by models and sweeps."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_future(value: datetime | None, now: datetime | None = None) -> bool:
    """True when *value* is set and later than *now*."""
    if value is None:
        return False
    return as_utc(value) > (now or utcnow())
