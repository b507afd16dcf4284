"""Data Transfer Objects for ThreadRank."""

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

TARGET_TYPES = ("post", "comment")
VOTE_VALUES = (-1, 0, 1)
FEED_SORT_MODES = ("hot", "new", "top", "controversial", "rising")
TIME_WINDOWS = ("hour", "day", "week", "month", "year", "all")
COMMENT_SORT_MODES = ("best", "top", "new", "controversial", "old")

# Sort modes whose ranking is restricted by the time window
WINDOWED_SORT_MODES = ("top", "controversial")

MAX_COMMENT_DEPTH = 5
DELETED_MARKER = "[deleted]"


@dataclass
class Votable:
    """Anything that accumulates up/down votes."""

    id: str
    author_id: str = ""
    score: int = 0                   # upvotes - downvotes once reconciled
    upvotes: int = 0
    downvotes: int = 0
    controversy_score: float = 0.0
    created_utc: float = 0.0


@dataclass
class Post(Votable):
    """Feed post."""

    community_id: str = ""
    title: str = ""
    body: str = ""
    comment_count: int = 0
    deleted: bool = False
    saved: bool = False              # viewer state
    hidden: bool = False             # viewer state


@dataclass
class Comment(Votable):
    """Comment on a post. `children` is filled by CommentTreeBuilder only."""

    post_id: str = ""
    parent_id: Optional[str] = None
    body: str = ""
    depth: int = 0                   # 0 = top-level, capped at MAX_COMMENT_DEPTH
    deleted: bool = False
    edited: bool = False
    children: list[str] = field(default_factory=list)


@dataclass
class Vote:
    """A user's non-zero vote on a target. Value 0 is stored as no record."""

    user_id: str
    target_id: str
    target_type: str                 # "post" | "comment"
    value: int                       # -1 | +1


@dataclass(frozen=True)
class VoteTransition:
    """Result of resolving a vote request against the current vote."""

    new_value: int
    score_delta: int
    upvote_delta: int
    downvote_delta: int


@dataclass
class Karma:
    """Per-author karma buckets."""

    post: int = 0
    comment: int = 0

    @property
    def total(self) -> int:
        return self.post + self.comment


@dataclass
class FeedCursor:
    """Client-side pagination state for a feed."""

    sort_mode: str = "hot"
    time_window: str = "day"
    page: int = 1                    # next page to request (1-based)
    has_more: bool = True
    seen_ids: set[str] = field(default_factory=set)


@dataclass
class PageResult:
    """Posts accepted from one page fetch."""

    items: list[Post] = field(default_factory=list)
    page: int = 0
    has_more: bool = True
    stale: bool = False              # response discarded after a pager reset


@dataclass
class PendingMutation:
    """An optimistic change awaiting remote confirmation."""

    target_id: str
    kind: str                        # "vote" | "save" | "hide" | ...
    prior_state: Any
    applied_at: float


@dataclass
class MutationResult:
    """Outcome of a coordinated optimistic mutation."""

    target_id: str
    status: str                      # "applied" | "rolled_back" | "rejected"
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "applied"


@dataclass
class CommentForest:
    """Arena of comments for one post, linked by id.

    `nodes` holds copies of the fetched comments with `children` and the
    effective display `depth` filled in. Parents are looked up through
    `parent_id`; only forward child links are stored.
    """

    post_id: str = ""
    sort_mode: str = "best"
    nodes: dict[str, Comment] = field(default_factory=dict)
    roots: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.nodes)

    def get(self, comment_id: str) -> Optional[Comment]:
        return self.nodes.get(comment_id)

    def walk(self, collapsed: frozenset = frozenset()) -> Iterator[Comment]:
        """Yield comments in display order (depth-first, pre-order).

        Descendants of ids in `collapsed` are skipped; the collapsed
        comment itself is still yielded.
        """
        stack = list(reversed(self.roots))
        while stack:
            comment = self.nodes[stack.pop()]
            yield comment
            if comment.id in collapsed:
                continue
            stack.extend(reversed(comment.children))

    def count_descendants(self, comment_id: str) -> int:
        count = 0
        stack = list(self.nodes[comment_id].children)
        while stack:
            count += 1
            stack.extend(self.nodes[stack.pop()].children)
        return count
