"""Tests for shared datetime helpers."""

from datetime import datetime, timedelta, timezone

from vesta_calendar.utils.datetime_parsing import (
    parse_google_date,
    parse_google_datetime,
    to_utc,
)


def test_to_utc_assumes_naive_values_are_utc():
    assert to_utc(datetime(2024, 1, 1, 10, 0)) == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert to_utc(None) is None


def test_to_utc_converts_offsets():
    madrid_winter = timezone(timedelta(hours=1))

    assert to_utc(datetime(2024, 1, 1, 10, 0, tzinfo=madrid_winter)) == datetime(
        2024, 1, 1, 9, 0, tzinfo=timezone.utc
    )


def test_parse_google_datetime_handles_zulu_and_garbage():
    assert parse_google_datetime("2024-01-01T08:00:00.000Z") == datetime(
        2024, 1, 1, 8, 0, tzinfo=timezone.utc
    )
    assert parse_google_datetime("not a date") is None
    assert parse_google_datetime(None) is None


def test_parse_google_date_is_local_midnight():
    assert parse_google_date("2024-07-01", "Europe/Madrid") == datetime(
        2024, 6, 30, 22, 0, tzinfo=timezone.utc
    )
    assert parse_google_date("2024-07-01", "Not/AZone") == datetime(
        2024, 7, 1, 0, 0, tzinfo=timezone.utc
    )
    assert parse_google_date("07/01/2024", "Europe/Madrid") is None
