"""Vote transitions and the local record of a user's votes and karma."""

import dataclasses
import logging
from typing import Iterable, Optional

from threadrank.core.exceptions import InvalidVoteValue
from threadrank.core.types import (
    TARGET_TYPES,
    VOTE_VALUES,
    Karma,
    Votable,
    Vote,
    VoteTransition,
)
from threadrank.engine.score_model import controversy_score

logger = logging.getLogger("threadrank")


def _check_value(value) -> int:
    # bool is an int subclass; True must not pass as +1
    if isinstance(value, bool) or not isinstance(value, int) or value not in VOTE_VALUES:
        raise InvalidVoteValue(value)
    return value


def transition_to(current_value: int, new_value: int) -> VoteTransition:
    """Delta of moving a stored vote from current_value to new_value.

    Set semantics: the same value twice is a zero delta, which is what
    makes store-side vote casting idempotent.
    """
    _check_value(current_value)
    _check_value(new_value)
    return VoteTransition(
        new_value=new_value,
        score_delta=new_value - current_value,
        upvote_delta=(new_value == 1) - (current_value == 1),
        downvote_delta=(new_value == -1) - (current_value == -1),
    )


def apply_vote(current_value: int, requested_value: int) -> VoteTransition:
    """Resolve a vote click against the user's current vote.

    Clicking the active direction again toggles the vote off.

    >>> apply_vote(1, 1).score_delta
    -1
    >>> apply_vote(1, -1).score_delta
    -2
    """
    _check_value(requested_value)
    _check_value(current_value)
    if requested_value == current_value and current_value != 0:
        return transition_to(current_value, 0)
    return transition_to(current_value, requested_value)


def apply_transition(votable: Votable, transition: VoteTransition) -> Votable:
    """Return a copy of votable with the transition's deltas applied."""
    upvotes = votable.upvotes + transition.upvote_delta
    downvotes = votable.downvotes + transition.downvote_delta
    return dataclasses.replace(
        votable,
        score=votable.score + transition.score_delta,
        upvotes=upvotes,
        downvotes=downvotes,
        controversy_score=controversy_score(upvotes, downvotes),
    )


class VoteLedger:
    """Current vote per (user, target) plus confirmed karma per author.

    At most one Vote exists per (user_id, target_id); a value of 0 is the
    absence of a record.
    """

    def __init__(self):
        self._votes: dict[tuple[str, str], Vote] = {}
        self._karma: dict[str, Karma] = {}

    def get_vote(self, user_id: str, target_id: str) -> int:
        vote = self._votes.get((user_id, target_id))
        return vote.value if vote else 0

    def record_vote(self, user_id: str, target_id: str, target_type: str,
                    value: int) -> Optional[Vote]:
        """Upsert or delete the vote record. Idempotent.

        Returns:
            The stored Vote, or None when value is 0.
        """
        _check_value(value)
        if target_type not in TARGET_TYPES:
            raise ValueError(f"Unknown target type '{target_type}'")

        key = (user_id, target_id)
        if value == 0:
            self._votes.pop(key, None)
            return None

        vote = self._votes.get(key)
        if vote is None:
            vote = Vote(user_id=user_id, target_id=target_id,
                        target_type=target_type, value=value)
            self._votes[key] = vote
        else:
            vote.value = value
            vote.target_type = target_type
        return vote

    def hydrate(self, user_id: str, votes: dict[str, tuple[str, int]],
                target_ids: Optional[Iterable[str]] = None) -> None:
        """Replace the user's records for a set of targets with the store's.

        Args:
            votes: target_id -> (target_type, value)
            target_ids: Targets the store was asked about. Those missing
                from votes have no vote any more and are cleared.
                Defaults to the keys of votes.
        """
        for target_id in (votes.keys() if target_ids is None else target_ids):
            self._votes.pop((user_id, target_id), None)
        for target_id, (target_type, value) in votes.items():
            self.record_vote(user_id, target_id, target_type, value)
        logger.debug(f"Hydrated {len(votes)} votes for user {user_id}")

    def votes_for(self, user_id: str) -> dict[str, int]:
        return {
            target_id: vote.value
            for (uid, target_id), vote in self._votes.items()
            if uid == user_id
        }

    def confirm_karma(self, author_id: str, target_type: str, delta: int) -> Karma:
        """Apply a confirmed score delta to the author's karma bucket.

        Only call once the vote is durably stored.
        """
        if target_type not in TARGET_TYPES:
            raise ValueError(f"Unknown target type '{target_type}'")
        karma = self._karma.setdefault(author_id, Karma())
        if target_type == "post":
            karma.post += delta
        else:
            karma.comment += delta
        return karma

    def karma_for(self, author_id: str) -> Karma:
        karma = self._karma.get(author_id, Karma())
        return Karma(post=karma.post, comment=karma.comment)
