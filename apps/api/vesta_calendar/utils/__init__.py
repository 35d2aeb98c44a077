"""Utility modules."""

from vesta_calendar.utils.datetime_parsing import (
    now_utc,
    parse_google_date,
    parse_google_datetime,
    to_utc,
)

__all__ = [
    "now_utc",
    "parse_google_date",
    "parse_google_datetime",
    "to_utc",
]
