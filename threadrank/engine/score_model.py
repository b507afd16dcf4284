"""Ranking signals for feed and comment sort modes.

Pure functions of vote tallies and time. Timestamps are UTC epoch seconds.
"""

import math
from typing import Callable

from threadrank.core.types import COMMENT_SORT_MODES, Comment

# Seconds of age that cost one order of magnitude of net votes
HOT_DECAY_SECONDS = 45000

BEST_OFFSET_HOURS = 2
BEST_GRAVITY = 1.8


def hot_score(upvotes: int, downvotes: int, age_seconds: float) -> float:
    """Time-decayed popularity.

    Strictly increasing in upvotes - downvotes, strictly decreasing in age.
    """
    net = upvotes - downvotes
    sign = (net > 0) - (net < 0)
    return sign * math.log10(1 + abs(net)) - age_seconds / HOT_DECAY_SECONDS


def controversy_score(upvotes: int, downvotes: int) -> float:
    """Highest for a large, evenly split vote. 0 without opposing votes."""
    if upvotes <= 0 or downvotes <= 0:
        return 0.0
    magnitude = upvotes + downvotes
    balance = min(upvotes, downvotes) / max(upvotes, downvotes)
    return float(magnitude ** balance)


def hours_since(created_utc: float, now: float) -> float:
    """Hours elapsed, clamped at zero for timestamps in the future."""
    return max(now - created_utc, 0.0) / 3600


def best_score(score: int, created_utc: float, now: float) -> float:
    """score / (hours + 2) ** 1.8"""
    return score / (hours_since(created_utc, now) + BEST_OFFSET_HOURS) ** BEST_GRAVITY


def top_score(score: int) -> int:
    return score


def new_score(created_utc: float) -> float:
    return created_utc


def comment_sort_key(sort_mode: str, now: float) -> Callable[[Comment], float]:
    """Ascending sort key for a comment sort mode.

    Descending modes negate their signal so that a plain stable
    ascending sort keeps equal comments in their original order.
    """
    if sort_mode == "best":
        return lambda c: -best_score(c.score, c.created_utc, now)
    if sort_mode == "top":
        return lambda c: -top_score(c.score)
    if sort_mode == "new":
        return lambda c: -new_score(c.created_utc)
    if sort_mode == "controversial":
        return lambda c: -controversy_score(c.upvotes, c.downvotes)
    if sort_mode == "old":
        return lambda c: new_score(c.created_utc)
    raise ValueError(f"Unknown comment sort mode '{sort_mode}'. Must be one of {COMMENT_SORT_MODES}")
