"""Tests for daily login streaks."""

from datetime import datetime, timedelta, timezone

from coinquest.rewards.streak import next_streak, utc_day

NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


class TestNextStreak:
    def test_first_login(self):
        assert next_streak(None, 0, 0, NOW) == (1, 1)

    def test_same_day_unchanged(self):
        earlier = NOW.replace(hour=0, minute=5)
        assert next_streak(earlier, 3, 5, NOW) == (3, 5)

    def test_next_day_extends(self):
        assert next_streak(NOW - timedelta(days=1), 3, 3, NOW) == (4, 4)

    def test_gap_resets(self):
        assert next_streak(NOW - timedelta(days=2), 3, 7, NOW) == (1, 7)

    def test_longest_kept(self):
        assert next_streak(NOW - timedelta(days=1), 2, 9, NOW) == (3, 9)

    def test_grace_days(self):
        assert next_streak(NOW - timedelta(days=2), 3, 3, NOW, grace_days=2) == (4, 4)

    def test_calendar_days_not_hours(self):
        late = datetime(2026, 3, 9, 23, 59, tzinfo=timezone.utc)
        early = datetime(2026, 3, 10, 0, 1, tzinfo=timezone.utc)
        assert next_streak(late, 1, 1, early) == (2, 2)

    def test_naive_datetime_treated_as_utc(self):
        naive = datetime(2026, 3, 9, 12, 0)
        assert utc_day(naive) == datetime(2026, 3, 9).date()
        assert next_streak(naive, 1, 1, NOW) == (2, 2)
