"""Datetime helpers shared by the CRM stores."""
from datetime import datetime, timezone
from typing import Optional


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (UTC if naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_db(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO-8601 string for SQLite."""
    if dt is None:
        return None
    return make_aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    return make_aware(datetime.fromisoformat(value))


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as returned by Google APIs.

    Handles the trailing 'Z' form ("2024-01-15T10:00:00Z").
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return make_aware(datetime.fromisoformat(value))
