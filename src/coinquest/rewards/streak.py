"""Daily login streaks, counted on UTC calendar days."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import NamedTuple


class StreakState(NamedTuple):
    current_streak: int
    longest_streak: int


def utc_day(dt: datetime) -> date:
    """Calendar day of ``dt`` in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()


def next_streak(
    last_login_at: datetime | None,
    current_streak: int,
    longest_streak: int,
    now: datetime,
    grace_days: int = 1,
) -> StreakState:
    """Streak after a successful login at ``now``.

    Same day as the previous login: unchanged. Within ``grace_days`` days:
    one more. Longer gap (or no previous login): back to 1.
    """
    if last_login_at is None:
        current = 1
    else:
        gap_days = (utc_day(now) - utc_day(last_login_at)).days
        if gap_days <= 0:
            current = max(current_streak, 1)
        elif gap_days <= grace_days:
            current = current_streak + 1
        else:
            current = 1
    return StreakState(current, max(longest_streak, current))
