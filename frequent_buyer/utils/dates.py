"""
UTC time helpers.

All ledger timestamps are stored as naive UTC datetimes; window bounds are dates.
"""
from datetime import datetime, date, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 timestamp (with or without offset) into naive UTC."""
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
