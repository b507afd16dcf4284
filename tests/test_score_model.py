"""Tests for ranking signals."""

import pytest

from threadrank.engine.score_model import (
    best_score,
    comment_sort_key,
    controversy_score,
    hot_score,
    hours_since,
)

from conftest import make_comment


class TestHotScore:
    def test_increases_with_net_votes(self):
        scores = [hot_score(up, 0, 3600) for up in range(0, 50)]
        assert scores == sorted(scores)
        assert len(set(scores)) == len(scores)

    def test_negative_net_ranks_below_zero(self):
        assert hot_score(0, 5, 0) < hot_score(0, 0, 0) < hot_score(5, 0, 0)

    def test_decreases_with_age(self):
        assert hot_score(10, 2, 0) > hot_score(10, 2, 3600) > hot_score(10, 2, 86400)

    def test_zero_votes_zero_age(self):
        assert hot_score(0, 0, 0) == 0


class TestControversyScore:
    def test_zero_without_opposition(self):
        assert controversy_score(0, 0) == 0
        assert controversy_score(100, 0) == 0
        assert controversy_score(0, 100) == 0

    def test_even_split_beats_lopsided(self):
        assert controversy_score(50, 50) > controversy_score(90, 10)

    def test_larger_even_split_beats_smaller(self):
        assert controversy_score(100, 100) > controversy_score(10, 10)

    def test_symmetric(self):
        assert controversy_score(30, 10) == controversy_score(10, 30)

    def test_even_split_value(self):
        assert controversy_score(5, 5) == pytest.approx(10.0)


class TestBestScore:
    def test_formula(self):
        now = 1_700_000_000.0
        created = now - 3 * 3600
        assert best_score(10, created, now) == pytest.approx(10 / 5 ** 1.8)

    def test_future_timestamp_clamped(self):
        now = 1_700_000_000.0
        assert hours_since(now + 500, now) == 0
        assert best_score(4, now + 500, now) == pytest.approx(4 / 2 ** 1.8)

    def test_newer_wins_at_equal_score(self):
        now = 1_700_000_000.0
        assert best_score(10, now - 60, now) > best_score(10, now - 86400, now)


class TestCommentSortKey:
    NOW = 1_700_000_000.0

    def _order(self, mode, comments):
        return [c.id for c in sorted(comments, key=comment_sort_key(mode, self.NOW))]

    def test_top_orders_by_score_desc(self):
        comments = [make_comment("a", score=1), make_comment("b", score=5), make_comment("c", score=3)]
        assert self._order("top", comments) == ["b", "c", "a"]

    def test_new_and_old_are_opposites(self):
        comments = [
            make_comment("a", created_utc=self.NOW - 30),
            make_comment("b", created_utc=self.NOW - 10),
            make_comment("c", created_utc=self.NOW - 20),
        ]
        assert self._order("new", comments) == ["b", "c", "a"]
        assert self._order("old", comments) == ["a", "c", "b"]

    def test_controversial_uses_vote_split(self):
        comments = [
            make_comment("calm", upvotes=20, downvotes=0),
            make_comment("split", upvotes=10, downvotes=10),
        ]
        assert self._order("controversial", comments) == ["split", "calm"]

    def test_unknown_mode_raises(self):
        with pytest.raises(ValueError):
            comment_sort_key("random", self.NOW)
