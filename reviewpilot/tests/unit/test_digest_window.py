"""
Unit tests for digest week windows, including Daylight-Saving weeks
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from reviewpilot.services.digest_window import compute_week_window, is_digest_time

NEW_YORK = ZoneInfo("America/New_York")
WEEK = timedelta(hours=168)


class TestComputeWeekWindow:

    def test_period_ends_at_last_sunday_midnight_local(self):
        # Wednesday 2026-01-14 15:00 New York
        now = datetime(2026, 1, 14, 15, 0, tzinfo=NEW_YORK)
        window = compute_week_window("America/New_York", now)

        assert window.period_end == datetime(2026, 1, 11, 0, 0, tzinfo=NEW_YORK)
        assert window.period_end.tzinfo == timezone.utc

    def test_sunday_uses_todays_midnight(self):
        now = datetime(2026, 1, 11, 9, 30, tzinfo=NEW_YORK)
        window = compute_week_window("America/New_York", now)

        assert window.period_end == datetime(2026, 1, 11, 0, 0, tzinfo=NEW_YORK)

    def test_local_date_not_utc_date_decides_the_week(self):
        """Test Saturday 22:00 in New York is still Saturday even though UTC is Sunday"""
        now = datetime(2026, 1, 18, 3, 0, tzinfo=timezone.utc)  # Sat 22:00 EST
        window = compute_week_window("America/New_York", now)

        assert window.period_end == datetime(2026, 1, 11, 0, 0, tzinfo=NEW_YORK)

    @pytest.mark.parametrize("now", [
        datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc),   # week ending on DST start day
        datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),  # week containing DST start
        datetime(2026, 11, 2, 12, 0, tzinfo=timezone.utc),  # week ending on DST end day
        datetime(2026, 11, 8, 12, 0, tzinfo=timezone.utc),  # week containing DST end
        datetime(2026, 6, 17, 12, 0, tzinfo=timezone.utc),
    ])
    def test_windows_are_exactly_168_hours(self, now):
        window = compute_week_window("America/New_York", now)

        assert window.period_end - window.period_start == WEEK
        assert window.period_start - window.prev_start == WEEK
        assert window.prev_end == window.period_start

    def test_spring_forward_week_boundaries(self):
        """Test the week ending after DST start keeps 168 elapsed hours"""
        now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        window = compute_week_window("America/New_York", now)

        # Sunday 2026-03-15 00:00 EDT
        assert window.period_end == datetime(2026, 3, 15, 4, 0, tzinfo=timezone.utc)
        # 168h earlier is Saturday 23:00 EST local
        assert window.period_start == datetime(2026, 3, 8, 4, 0, tzinfo=timezone.utc)

    def test_fall_back_week_boundaries(self):
        now = datetime(2026, 11, 8, 12, 0, tzinfo=timezone.utc)
        window = compute_week_window("America/New_York", now)

        # Sunday 2026-11-08 00:00 EST
        assert window.period_end == datetime(2026, 11, 8, 5, 0, tzinfo=timezone.utc)
        assert window.period_start == datetime(2026, 11, 1, 5, 0, tzinfo=timezone.utc)

    def test_naive_now_is_treated_as_utc(self):
        aware = compute_week_window("Europe/London", datetime(2026, 5, 6, 12, 0, tzinfo=timezone.utc))
        naive = compute_week_window("Europe/London", datetime(2026, 5, 6, 12, 0))
        assert aware == naive

    def test_invalid_timezone_raises(self):
        with pytest.raises(ValueError):
            compute_week_window("Mars/Olympus_Mons", datetime(2026, 5, 6, tzinfo=timezone.utc))


class TestIsDigestTime:

    def test_true_in_local_sunday_nine_am(self):
        now = datetime(2026, 1, 11, 9, 15, tzinfo=NEW_YORK)
        assert is_digest_time("America/New_York", now) is True

    def test_false_outside_the_hour(self):
        assert is_digest_time("America/New_York", datetime(2026, 1, 11, 10, 0, tzinfo=NEW_YORK)) is False
        assert is_digest_time("America/New_York", datetime(2026, 1, 10, 9, 0, tzinfo=NEW_YORK)) is False

    def test_follows_local_offset_across_dst(self):
        """Test the slot tracks 09:00 local whether the offset is -5 or -4"""
        winter = datetime(2026, 1, 11, 14, 0, tzinfo=timezone.utc)  # 09:00 EST
        summer = datetime(2026, 7, 12, 13, 0, tzinfo=timezone.utc)  # 09:00 EDT

        assert is_digest_time("America/New_York", winter) is True
        assert is_digest_time("America/New_York", summer) is True
        assert is_digest_time("America/New_York", datetime(2026, 7, 12, 14, 0, tzinfo=timezone.utc)) is False

    def test_custom_slot(self):
        monday_eight = datetime(2026, 1, 12, 8, 30, tzinfo=NEW_YORK)
        assert is_digest_time("America/New_York", monday_eight, weekday=0, hour=8) is True
