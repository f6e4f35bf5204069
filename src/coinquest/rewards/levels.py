"""Learner levels.

A learner's level is the highest rung whose cumulative XP they have reached.
Keep in sync with the client's level bar.
"""

from __future__ import annotations

from bisect import bisect_right

LEVEL_THRESHOLDS: list[dict] = [
    {"level": 1, "title": "Piggy Bank", "cumulative": 0},
    {"level": 2, "title": "Penny Saver", "cumulative": 100},
    {"level": 3, "title": "Budget Builder", "cumulative": 250},
    {"level": 4, "title": "Smart Spender", "cumulative": 500},
    {"level": 5, "title": "Interest Earner", "cumulative": 1000},
    {"level": 6, "title": "Savings Strategist", "cumulative": 2000},
    {"level": 7, "title": "Market Explorer", "cumulative": 3500},
    {"level": 8, "title": "Portfolio Planner", "cumulative": 5500},
    {"level": 9, "title": "Wealth Architect", "cumulative": 8000},
    {"level": 10, "title": "Money Master", "cumulative": 12000},
]

_CUMULATIVE = [rung["cumulative"] for rung in LEVEL_THRESHOLDS]


def level_for_xp(total_xp: int) -> int:
    """Level number for a total XP amount."""
    return compute_level(total_xp)["level"]


def compute_level(total_xp: int) -> dict:
    """Current rung, the next one, and how far the learner is between them."""
    index = max(bisect_right(_CUMULATIVE, total_xp) - 1, 0)
    rung = LEVEL_THRESHOLDS[index]
    upcoming = LEVEL_THRESHOLDS[min(index + 1, len(LEVEL_THRESHOLDS) - 1)]

    # Top rung points at itself; a span of 1 keeps the client's bar full.
    span = max(upcoming["cumulative"] - rung["cumulative"], 1)

    return {
        "level": rung["level"],
        "title": rung["title"],
        "xp_into_level": total_xp - rung["cumulative"],
        "xp_for_level": span,
        "next_level": upcoming["level"],
        "next_title": upcoming["title"],
    }
