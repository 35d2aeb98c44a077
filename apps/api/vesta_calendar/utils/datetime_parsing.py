"""Datetime helpers for Google Calendar payloads and stored timestamps."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime | None) -> datetime | None:
    """Normalise to aware UTC. Naive values are taken to already be UTC (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_google_datetime(value: object | None) -> datetime | None:
    """Parse an RFC 3339 `dateTime`/`updated` value into aware UTC."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return to_utc(parsed)


def _zone(tz_name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, falling back to UTC", tz_name)
        return timezone.utc


def parse_google_date(value: object | None, tz_name: str) -> datetime | None:
    """Midnight of an all-day `date` (YYYY-MM-DD) in `tz_name`, as aware UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        day = date.fromisoformat(value.strip())
    except ValueError:
        return None
    local_midnight = datetime.combine(day, time.min, tzinfo=_zone(tz_name))
    return local_midnight.astimezone(timezone.utc)
