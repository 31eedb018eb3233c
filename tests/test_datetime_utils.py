from datetime import datetime, timedelta, timezone

import pytest

from mailpipe.datetime_utils import format_display_date, isoformat_utc, next_local_time, to_naive_utc


class TestToNaiveUtc:

    def test_none(self):
        assert to_naive_utc(None) is None

    def test_zulu_string(self):
        assert to_naive_utc("2026-10-18T09:30:00Z") == datetime(2026, 10, 18, 9, 30)

    def test_offset_is_converted(self):
        aware = datetime(2026, 10, 18, 9, 0, tzinfo=timezone(timedelta(hours=7)))
        assert to_naive_utc(aware) == datetime(2026, 10, 18, 2, 0)

    def test_naive_is_unchanged(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert to_naive_utc(naive) is naive

    def test_bad_string(self):
        with pytest.raises(ValueError):
            to_naive_utc("next tuesday")


class TestNextLocalTime:

    def test_later_today(self):
        # 00:00 UTC is 07:00 in Bangkok, so 09:00 local is still ahead
        now = datetime(2026, 10, 18, 0, 0)
        assert next_local_time(9, now=now) == datetime(2026, 10, 18, 2, 0)

    def test_rolls_to_tomorrow(self):
        # 03:00 UTC is 10:00 in Bangkok
        now = datetime(2026, 10, 18, 3, 0)
        assert next_local_time(9, now=now) == datetime(2026, 10, 19, 2, 0)

    def test_exact_slot_rolls_over(self):
        now = datetime(2026, 10, 18, 2, 0)
        assert next_local_time(9, now=now) == datetime(2026, 10, 19, 2, 0)

    def test_days_ahead(self):
        now = datetime(2026, 10, 18, 0, 0)
        assert next_local_time(8, now=now, days_ahead=2) == datetime(2026, 10, 20, 1, 0)

    def test_other_timezone(self):
        now = datetime(2026, 1, 15, 12, 0)
        assert next_local_time(9, tz_name="UTC", now=now) == datetime(2026, 1, 16, 9, 0)


def test_format_display_date():
    assert format_display_date(datetime(2026, 10, 5, 13, 0)) == "October 5, 2026"
    assert format_display_date("2025-10-15T00:00:00Z") == "October 15, 2025"
    assert format_display_date(None) == ""


def test_isoformat_utc():
    assert isoformat_utc(datetime(2026, 10, 18, 9, 0)) == "2026-10-18T09:00:00+00:00"
    assert isoformat_utc(None) is None
