"""Tests for vote transitions and VoteLedger."""

import pytest

from threadrank.core.exceptions import InvalidVoteValue
from threadrank.engine.vote_ledger import (
    VoteLedger,
    apply_transition,
    apply_vote,
    transition_to,
)

from conftest import make_post


class TestApplyVote:
    @pytest.mark.parametrize("current, requested, new_value, delta", [
        (0, 1, 1, 1),
        (0, -1, -1, -1),
        (1, 1, 0, -1),
        (-1, -1, 0, 1),
        (1, -1, -1, -2),
        (-1, 1, 1, 2),
        (1, 0, 0, -1),
        (0, 0, 0, 0),
    ])
    def test_transition_table(self, current, requested, new_value, delta):
        transition = apply_vote(current, requested)
        assert transition.new_value == new_value
        assert transition.score_delta == delta

    def test_flip_moves_counts(self):
        transition = apply_vote(1, -1)
        assert transition.upvote_delta == -1
        assert transition.downvote_delta == 1

    @pytest.mark.parametrize("value", [2, -2, 1.0, "1", None, True])
    def test_rejects_invalid_values(self, value):
        with pytest.raises(InvalidVoteValue):
            apply_vote(0, value)


class TestTransitionTo:
    def test_same_value_is_noop(self):
        transition = transition_to(1, 1)
        assert transition.score_delta == 0
        assert transition.upvote_delta == 0
        assert transition.downvote_delta == 0


class TestApplyTransition:
    def test_updates_counts_and_controversy(self):
        post = make_post(score=3, upvotes=5, downvotes=2)
        updated = apply_transition(post, apply_vote(0, -1))

        assert updated.score == 2
        assert updated.downvotes == 3
        assert updated.controversy_score == pytest.approx(8 ** (3 / 5))
        assert post.score == 3  # original untouched

    def test_score_matches_tallies_after_sequence(self):
        post = make_post()
        current = 0
        for requested in (1, 1, -1, 1, -1, -1, 0):
            transition = apply_vote(current, requested)
            post = apply_transition(post, transition)
            current = transition.new_value
            assert post.score == post.upvotes - post.downvotes
            assert post.upvotes in (0, 1) and post.downvotes in (0, 1)


class TestVoteLedger:
    def test_default_vote_is_zero(self):
        assert VoteLedger().get_vote("u1", "p1") == 0

    def test_record_is_idempotent(self):
        ledger = VoteLedger()
        ledger.record_vote("u1", "p1", "post", 1)
        ledger.record_vote("u1", "p1", "post", 1)
        assert ledger.get_vote("u1", "p1") == 1
        assert ledger.votes_for("u1") == {"p1": 1}

    def test_zero_removes_record(self):
        ledger = VoteLedger()
        ledger.record_vote("u1", "p1", "post", -1)
        assert ledger.record_vote("u1", "p1", "post", 0) is None
        assert ledger.votes_for("u1") == {}

    def test_votes_are_per_user(self):
        ledger = VoteLedger()
        ledger.record_vote("u1", "p1", "post", 1)
        ledger.record_vote("u2", "p1", "post", -1)
        assert ledger.get_vote("u1", "p1") == 1
        assert ledger.get_vote("u2", "p1") == -1

    def test_unknown_target_type_raises(self):
        with pytest.raises(ValueError):
            VoteLedger().record_vote("u1", "x", "community", 1)

    def test_hydrate(self):
        ledger = VoteLedger()
        ledger.hydrate("u1", {"p1": ("post", 1), "c1": ("comment", -1)})
        assert ledger.votes_for("u1") == {"p1": 1, "c1": -1}

    def test_hydrate_clears_targets_without_votes(self):
        ledger = VoteLedger()
        ledger.record_vote("u1", "p1", "post", 1)
        ledger.record_vote("u1", "p2", "post", 1)
        ledger.record_vote("u2", "p1", "post", -1)

        ledger.hydrate("u1", {"c1": ("comment", 1)}, ["p1", "c1"])

        assert ledger.votes_for("u1") == {"p2": 1, "c1": 1}
        assert ledger.get_vote("u2", "p1") == -1

    def test_karma_buckets(self):
        ledger = VoteLedger()
        ledger.confirm_karma("a1", "post", 1)
        ledger.confirm_karma("a1", "comment", -2)
        karma = ledger.karma_for("a1")
        assert (karma.post, karma.comment, karma.total) == (1, -2, -1)

    def test_karma_for_returns_copy(self):
        ledger = VoteLedger()
        ledger.karma_for("a1").post = 10
        assert ledger.karma_for("a1").post == 0
