"""Discussion service: the view model behind feed, post and comment screens."""

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Optional

from threadrank.adapters.store_adapter import StoreAdapter
from threadrank.core.exceptions import (
    InvalidCommentError,
    MaxDepthExceeded,
    PersistenceFailure,
)
from threadrank.core.i18n_manager import I18nManager
from threadrank.core.types import (
    DELETED_MARKER,
    MAX_COMMENT_DEPTH,
    Comment,
    CommentForest,
    Karma,
    MutationResult,
    Post,
    Votable,
)
from threadrank.engine.comment_tree import (
    CommentTreeBuilder,
    next_reply_depth,
    prepare_comment_body,
)
from threadrank.engine.feed_pager import FeedPager
from threadrank.engine.mutation_coordinator import OptimisticMutationCoordinator
from threadrank.engine.vote_ledger import VoteLedger, apply_transition, apply_vote

logger = logging.getLogger("threadrank")

VOTE_TALLY_FIELDS = ("score", "upvotes", "downvotes", "controversy_score")


class DiscussionService:
    """Orchestrates the local cache, optimistic mutations and the store.

    Responsibilities:
    - Keep the local cache of posts and comments; only mutation
      apply/rollback and confirmed store responses write to it
    - Build comment forests once per fetch and sort mode
    - Route votes, saves and hides through the mutation coordinator
    - Push confirmed karma deltas to the store without waiting
    - Collect user-visible failure notices
    """

    def __init__(
        self,
        store: StoreAdapter,
        user_id: str,
        ledger: VoteLedger,
        coordinator: OptimisticMutationCoordinator,
        tree_builder: CommentTreeBuilder,
        pager: FeedPager,
        i18n: I18nManager,
        default_comment_sort: str = "best",
        notify: Optional[Callable[[str], None]] = None,
    ):
        self._store = store
        self._user_id = user_id
        self._ledger = ledger
        self._coordinator = coordinator
        self._tree_builder = tree_builder
        self._pager = pager
        self._i18n = i18n
        self._default_comment_sort = default_comment_sort
        self._notify = notify

        self._posts: dict[str, Post] = {}
        self._comments: dict[str, dict[str, Comment]] = {}
        self._comment_posts: dict[str, str] = {}
        self._forests: dict[tuple[str, str], CommentForest] = {}
        self._collapsed: set[str] = set()
        self._notices: list[str] = []
        self._background: set[asyncio.Task] = set()

    # ----- reads -----

    def get_post(self, post_id: str) -> Optional[Post]:
        return self._posts.get(post_id)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        post_id = self._comment_posts.get(comment_id)
        if post_id is None:
            return None
        return self._comments[post_id].get(comment_id)

    def get_display_score(self, target_id: str) -> int:
        """Score as currently shown, including unconfirmed votes.

        Raises:
            KeyError: target is not in the local cache
        """
        votable = self._posts.get(target_id) or self.get_comment(target_id)
        if votable is None:
            raise KeyError(f"Unknown target {target_id}")
        return votable.score

    def get_user_vote(self, target_id: str) -> int:
        return self._ledger.get_vote(self._user_id, target_id)

    def get_karma(self, author_id: str) -> Karma:
        return self._ledger.karma_for(author_id)

    def feed(self) -> list[Post]:
        """Loaded feed posts in display order, hidden posts left out."""
        posts = (self._posts.get(item.id, item) for item in self._pager.items)
        return [post for post in posts if not post.hidden]

    def drain_notices(self) -> list[str]:
        """Return and clear pending user-visible notices."""
        notices, self._notices = self._notices, []
        return notices

    # ----- feed -----

    def change_sort(self, sort_mode: str) -> None:
        self._pager.change_sort(sort_mode)

    def change_time_window(self, time_window: str) -> None:
        self._pager.change_time_window(time_window)

    async def next_page(self) -> list[Post]:
        """Load the next feed page; returns the newly added posts."""
        try:
            result = await self._pager.next_page()
        except PersistenceFailure as e:
            logger.warning(f"Feed page failed: {e.message}")
            self._push_notice("errors.feed_failed")
            return []
        flags = await self._load_viewer_flags([post.id for post in result.items])
        self._cache_posts(result.items, flags)
        return [self._posts.get(post.id, post) for post in result.items]

    async def _load_viewer_flags(self, post_ids: list[str]) -> dict[str, tuple[bool, bool]]:
        if not post_ids:
            return {}
        try:
            return await self._store.fetch_viewer_flags(self._user_id, post_ids)
        except PersistenceFailure as e:
            logger.warning(f"Loading saved/hidden state failed: {e.message}")
            return {}

    def _cache_posts(self, posts: list[Post], flags: dict[str, tuple[bool, bool]]) -> None:
        for post in posts:
            if self._coordinator.has_pending(post.id):
                continue
            cached = self._posts.get(post.id)
            # A save/hide still cooling down is newer than what the store returned
            if post.id in flags and not self._coordinator.is_locked(post.id):
                saved, hidden = flags[post.id]
                post = dataclasses.replace(post, saved=saved, hidden=hidden)
            elif cached is not None:
                post = dataclasses.replace(post, saved=cached.saved, hidden=cached.hidden)
            self._posts[post.id] = post

    # ----- comments -----

    async def load_comments(self, post_id: str) -> int:
        """Fetch a post's comments into the cache. Returns the count."""
        try:
            comments = await self._store.fetch_comments(post_id)
        except PersistenceFailure as e:
            logger.warning(f"Loading comments for {post_id} failed: {e.message}")
            self._push_notice("errors.feed_failed")
            return 0

        cached = self._comments.get(post_id, {})
        fresh: dict[str, Comment] = {}
        for comment in comments:
            if self._coordinator.has_pending(comment.id) and comment.id in cached:
                comment = cached[comment.id]
            fresh[comment.id] = comment
            self._comment_posts[comment.id] = post_id
        self._comments[post_id] = fresh
        self._invalidate(post_id)
        logger.info(f"Loaded {len(fresh)} comments for post {post_id}")
        return len(fresh)

    def get_comment_forest(self, post_id: str, sort_mode: Optional[str] = None) -> CommentForest:
        """Ordered comment forest, rebuilt only after a fetch or mutation."""
        sort_mode = sort_mode or self._default_comment_sort
        key = (post_id, sort_mode)
        forest = self._forests.get(key)
        if forest is None:
            comments = self._comments.get(post_id, {}).values()
            forest = self._tree_builder.build(comments, sort_mode, post_id=post_id)
            self._forests[key] = forest
        return forest

    def visible_comments(self, post_id: str, sort_mode: Optional[str] = None) -> list[Comment]:
        """Comments in display order, skipping replies of collapsed threads."""
        forest = self.get_comment_forest(post_id, sort_mode)
        return list(forest.walk(frozenset(self._collapsed)))

    def toggle_collapsed(self, comment_id: str) -> bool:
        """Collapse or expand a thread. Returns True if now collapsed."""
        if comment_id in self._collapsed:
            self._collapsed.discard(comment_id)
            return False
        self._collapsed.add(comment_id)
        return True

    def collapsed_label(self, post_id: str, comment_id: str,
                        sort_mode: Optional[str] = None) -> str:
        """Placeholder text shown in place of a collapsed thread's replies."""
        count = self.get_comment_forest(post_id, sort_mode).count_descendants(comment_id)
        return self._i18n.get("notices.collapsed_children", count=count)

    def can_reply(self, comment_id: str) -> bool:
        comment = self.get_comment(comment_id)
        return comment is not None and comment.depth < MAX_COMMENT_DEPTH

    async def create_comment(self, post_id: str, body: str,
                             parent_id: Optional[str] = None) -> Optional[Comment]:
        """Post a comment or reply.

        The depth limit is checked locally when the parent is cached and
        by the store otherwise; both paths add the same notice.

        Raises:
            InvalidCommentError: empty body, or the store cannot find the
                post or parent
            MaxDepthExceeded: parent is already at the maximum depth
        """
        body = prepare_comment_body(body)
        try:
            if parent_id is not None:
                parent = self.get_comment(parent_id)
                if parent is not None:
                    next_reply_depth(parent)
            comment = await self._store.create_comment(post_id, self._user_id, body, parent_id)
        except MaxDepthExceeded:
            self._push_notice("errors.depth_exceeded", max_depth=MAX_COMMENT_DEPTH)
            raise
        except InvalidCommentError as e:
            logger.warning(f"Comment on {post_id} rejected: {e.message}")
            self._push_notice("errors.comment_failed")
            raise
        except PersistenceFailure as e:
            logger.warning(f"Comment on {post_id} failed: {e.message}")
            self._push_notice("errors.comment_failed")
            return None

        self._comments.setdefault(post_id, {})[comment.id] = comment
        self._comment_posts[comment.id] = post_id
        post = self._posts.get(post_id)
        if post is not None:
            self._posts[post_id] = dataclasses.replace(post, comment_count=post.comment_count + 1)
        self._invalidate(post_id)
        return comment

    async def edit_comment(self, comment_id: str, body: str) -> bool:
        """Replace a comment's body. An unchanged body is a no-op.

        Raises:
            InvalidCommentError: empty body or deleted comment
        """
        body = prepare_comment_body(body)
        comment = self.get_comment(comment_id)
        if comment is not None:
            if comment.deleted:
                raise InvalidCommentError(f"Comment {comment_id} is deleted")
            if comment.body == body:
                return True

        try:
            await self._store.update_comment(comment_id, body)
        except PersistenceFailure as e:
            logger.warning(f"Editing comment {comment_id} failed: {e.message}")
            self._push_notice("errors.edit_failed")
            return False

        comment = self.get_comment(comment_id)
        if comment is not None:
            self._comments[comment.post_id][comment_id] = dataclasses.replace(
                comment, body=body, edited=True
            )
            self._invalidate(comment.post_id)
        return True

    async def delete_comment(self, comment_id: str) -> bool:
        """Soft-delete a comment; replies stay attached."""
        try:
            await self._store.delete_comment(comment_id)
        except PersistenceFailure as e:
            logger.warning(f"Deleting comment {comment_id} failed: {e.message}")
            self._push_notice("errors.delete_failed")
            return False

        comment = self.get_comment(comment_id)
        if comment is not None:
            self._comments[comment.post_id][comment_id] = dataclasses.replace(
                comment, deleted=True, body=DELETED_MARKER
            )
            self._invalidate(comment.post_id)
        return True

    # ----- mutations -----

    async def submit_vote(self, target_id: str, target_type: str, value: int) -> MutationResult:
        """Vote on a cached post or comment.

        Clicking the current direction again removes the vote.

        Raises:
            InvalidVoteValue: value not in {-1, 0, +1}
            KeyError: target is not in the local cache
        """
        current = self._ledger.get_vote(self._user_id, target_id)
        transition = apply_vote(current, value)
        votable = self._require_votable(target_id, target_type)

        # Only the vote tallies are rolled back; other fields may have been
        # confirmed by the store while the vote was pending
        def capture():
            votable = self._require_votable(target_id, target_type)
            return {name: getattr(votable, name) for name in VOTE_TALLY_FIELDS}, current

        def apply():
            self._put_votable(apply_transition(self._require_votable(target_id, target_type), transition))
            self._ledger.record_vote(self._user_id, target_id, target_type, transition.new_value)

        def restore(prior):
            tallies, prior_value = prior
            self._put_votable(dataclasses.replace(self._require_votable(target_id, target_type), **tallies))
            self._ledger.record_vote(self._user_id, target_id, target_type, prior_value)

        def confirmed():
            self._propagate_karma(votable.author_id, target_type, transition.score_delta)

        result = await self._coordinator.run(
            target_id, "vote",
            capture=capture,
            apply=apply,
            restore=restore,
            persist=lambda: self._store.cast_vote(
                target_id, target_type, self._user_id, transition.new_value
            ),
            on_confirmed=confirmed,
        )
        if result.status == "rolled_back":
            self._push_notice("errors.vote_failed")
        return result

    async def toggle_saved(self, post_id: str) -> MutationResult:
        result = await self._toggle_flag(post_id, "saved", self._store.set_saved, "save")
        if result.ok:
            saved = self._posts[post_id].saved
            self._push_notice("notices.post_saved" if saved else "notices.post_unsaved")
        return result

    async def toggle_hidden(self, post_id: str) -> MutationResult:
        return await self._toggle_flag(post_id, "hidden", self._store.set_hidden, "hide")

    async def _toggle_flag(self, post_id: str, flag: str,
                           persist: Callable[[str, str, bool], Awaitable[None]],
                           kind: str) -> MutationResult:
        if post_id not in self._posts:
            raise KeyError(f"Unknown post {post_id}")
        new_value = not getattr(self._posts[post_id], flag)

        def set_flag(value: bool) -> None:
            self._posts[post_id] = dataclasses.replace(self._posts[post_id], **{flag: value})

        result = await self._coordinator.run(
            post_id, kind,
            capture=lambda: getattr(self._posts[post_id], flag),
            apply=lambda: set_flag(new_value),
            restore=set_flag,
            persist=lambda: persist(self._user_id, post_id, new_value),
        )
        if result.status == "rolled_back":
            self._push_notice(f"errors.{kind}_failed")
        return result

    async def hydrate_votes(self, target_ids: Optional[list[str]] = None) -> int:
        """Load the user's existing votes for cached (or given) targets."""
        if target_ids is None:
            target_ids = list(self._posts) + list(self._comment_posts)
        try:
            votes = await self._store.fetch_user_votes(self._user_id, target_ids)
        except PersistenceFailure as e:
            logger.warning(f"Loading votes failed: {e.message}")
            return 0
        settled = [t for t in target_ids if not self._coordinator.has_pending(t)]
        votes = {t: votes[t] for t in settled if t in votes}
        self._ledger.hydrate(self._user_id, votes, settled)
        return len(votes)

    # ----- karma -----

    def _propagate_karma(self, author_id: str, bucket: str, delta: int) -> None:
        if not author_id or delta == 0:
            return
        self._ledger.confirm_karma(author_id, bucket, delta)
        task = asyncio.get_running_loop().create_task(self._push_karma(author_id, bucket, delta))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _push_karma(self, author_id: str, bucket: str, delta: int) -> None:
        try:
            await self._store.increment_karma(author_id, bucket, delta)
        except PersistenceFailure as e:
            logger.warning(f"Karma update for {author_id} dropped: {e.message}")

    async def flush(self) -> None:
        """Wait for background karma updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # ----- helpers -----

    def _require_votable(self, target_id: str, target_type: str) -> Votable:
        votable = self._posts.get(target_id) if target_type == "post" else self.get_comment(target_id)
        if votable is None:
            raise KeyError(f"Unknown {target_type} {target_id}")
        return votable

    def _put_votable(self, votable: Votable) -> None:
        if isinstance(votable, Post):
            self._posts[votable.id] = votable
        else:
            self._comments[votable.post_id][votable.id] = votable
            self._invalidate(votable.post_id)

    def _invalidate(self, post_id: str) -> None:
        for key in [key for key in self._forests if key[0] == post_id]:
            del self._forests[key]

    def _push_notice(self, key: str, **kwargs) -> None:
        message = self._i18n.get(key, **kwargs)
        self._notices.append(message)
        if self._notify is not None:
            self._notify(message)
