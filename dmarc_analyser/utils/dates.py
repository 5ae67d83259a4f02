"""Query-string date parsing."""

from __future__ import annotations

from datetime import datetime, timezone


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DD`` or a full ISO 8601 timestamp as aware UTC.

    Returns None for an empty value.

    Raises:
        ValueError: When *value* is not a recognisable date.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
