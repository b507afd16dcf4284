"""Abstract base class for the discussion store."""

from abc import ABC, abstractmethod
from typing import Optional

from threadrank.core.types import Comment, Post


class StoreAdapter(ABC):
    """Abstract interface for persisting votes and reading feeds.

    All methods are coroutines. Failures raise PersistenceFailure
    subclasses.
    """

    @abstractmethod
    async def cast_vote(self, target_id: str, target_type: str,
                        user_id: str, value: int) -> bool:
        """Store the user's vote on a target.

        Set semantics: value 0 deletes the vote, +1/-1 upserts it. Calling
        twice with the same arguments leaves the same end state.

        Returns:
            True on success, False if the store refused the vote

        Raises:
            PersistenceFailure: transient failure
        """
        ...

    @abstractmethod
    async def fetch_posts(self, sort_mode: str, time_window: str,
                          page: int, page_size: int) -> list[Post]:
        """Fetch one page of posts, already ordered for sort_mode.

        Args:
            sort_mode: "hot", "new", "top", "controversial", "rising"
            time_window: "hour", "day", "week", "month", "year", "all";
                only applied for "top" and "controversial"
            page: 1-based page number
            page_size: Posts per page

        Raises:
            PersistenceFailure: transient failure
        """
        ...

    @abstractmethod
    async def fetch_comments(self, post_id: str) -> list[Comment]:
        """Fetch every comment of a post, flat and unordered.

        Deleted comments are included so their replies stay attached.
        """
        ...

    @abstractmethod
    async def increment_karma(self, author_id: str, bucket: str, delta: int) -> None:
        """Add delta to the author's "post" or "comment" karma."""
        ...

    @abstractmethod
    async def fetch_user_votes(self, user_id: str,
                               target_ids: list[str]) -> dict[str, tuple[str, int]]:
        """Return target_id -> (target_type, value) for the user's votes."""
        ...

    @abstractmethod
    async def fetch_viewer_flags(self, user_id: str,
                                 post_ids: list[str]) -> dict[str, tuple[bool, bool]]:
        """Return post_id -> (saved, hidden) for every requested post."""
        ...

    @abstractmethod
    async def create_comment(self, post_id: str, author_id: str, body: str,
                             parent_id: Optional[str] = None) -> Comment:
        """Insert a comment and return it as stored.

        Raises:
            MaxDepthExceeded: parent is already at the maximum depth
            PersistenceFailure: transient failure
        """
        ...

    @abstractmethod
    async def update_comment(self, comment_id: str, body: str) -> Comment:
        """Replace a comment's body and mark it edited.

        Raises:
            InvalidCommentError: comment is missing or deleted
            PersistenceFailure: transient failure
        """
        ...

    @abstractmethod
    async def delete_comment(self, comment_id: str) -> None:
        """Soft-delete a comment; its replies remain."""
        ...

    @abstractmethod
    async def set_saved(self, user_id: str, post_id: str, saved: bool) -> None:
        ...

    @abstractmethod
    async def set_hidden(self, user_id: str, post_id: str, hidden: bool) -> None:
        ...
