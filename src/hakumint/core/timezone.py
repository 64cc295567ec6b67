"""UTC clock helpers.

Timestamps are stored as naive UTC datetimes so that PostgreSQL ``timestamp``
columns and SQLite test databases compare them the same way.
"""

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return the current UTC time without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


def minutes_ago(minutes: int) -> datetime:
    """Return the naive UTC instant ``minutes`` before now."""
    return utcnow() - timedelta(minutes=minutes)
