"""Builds ordered, depth-limited comment forests from flat comment lists."""

import dataclasses
import logging
import re
import time
from typing import Callable, Iterable, Optional

from threadrank.core.exceptions import InvalidCommentError, MaxDepthExceeded
from threadrank.core.types import (
    COMMENT_SORT_MODES,
    DELETED_MARKER,
    MAX_COMMENT_DEPTH,
    Comment,
    CommentForest,
)
from threadrank.engine.score_model import comment_sort_key

logger = logging.getLogger("threadrank")

MAX_COMMENT_LENGTH = 10000

_SCRIPT_PATTERN = re.compile(r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE)


def next_reply_depth(parent: Optional[Comment], max_depth: int = MAX_COMMENT_DEPTH) -> int:
    """Depth for a new reply to parent (None for a top-level comment).

    Raises:
        MaxDepthExceeded: parent is already at max_depth
    """
    if parent is None:
        return 0
    depth = parent.depth + 1
    if depth > max_depth:
        raise MaxDepthExceeded(
            f"Reply to {parent.id} would be at depth {depth} (max {max_depth})"
        )
    return depth


def prepare_comment_body(text: str, max_length: int = MAX_COMMENT_LENGTH) -> str:
    """Strip script blocks, cap length and trim whitespace.

    Raises:
        InvalidCommentError: nothing left after cleaning
    """
    text = _SCRIPT_PATTERN.sub('', text or '')
    text = text[:max_length].strip()
    if not text:
        raise InvalidCommentError("Comment cannot be empty")
    return text


class CommentTreeBuilder:
    """Turns the unordered comments of one post into a CommentForest.

    - Comments whose parent is missing are promoted to roots
    - Depth comes from the tree shape, clamped to max_depth
    - Children and roots are stably sorted for the requested mode
    - Deleted comments stay in place with their body masked
    - Never raises for malformed input (deep chains, parent cycles)
    """

    def __init__(self, max_depth: int = MAX_COMMENT_DEPTH,
                 clock: Callable[[], float] = time.time):
        self._max_depth = max_depth
        self._clock = clock

    def build(self, comments: Iterable[Comment], sort_mode: str = "best",
              post_id: str = "", now: Optional[float] = None) -> CommentForest:
        if sort_mode not in COMMENT_SORT_MODES:
            raise ValueError(f"Unknown comment sort mode '{sort_mode}'. Must be one of {COMMENT_SORT_MODES}")
        now = self._clock() if now is None else now

        nodes = self._index(comments)
        roots = self._link(nodes)
        self._promote_cycles(nodes, roots)
        self._assign_depths(nodes, roots)
        self._sort(nodes, roots, comment_sort_key(sort_mode, now))

        logger.debug(
            f"Built comment forest for post {post_id or '?'}: "
            f"{len(nodes)} comments, {len(roots)} roots ({sort_mode})"
        )
        return CommentForest(post_id=post_id, sort_mode=sort_mode, nodes=nodes, roots=roots)

    @staticmethod
    def _index(comments: Iterable[Comment]) -> dict[str, Comment]:
        nodes: dict[str, Comment] = {}
        for comment in comments:
            if comment.id in nodes:
                logger.warning(f"Duplicate comment id {comment.id} ignored")
                continue
            body = DELETED_MARKER if comment.deleted else comment.body
            nodes[comment.id] = dataclasses.replace(comment, body=body, children=[])
        return nodes

    @staticmethod
    def _link(nodes: dict[str, Comment]) -> list[str]:
        roots = []
        for comment in nodes.values():
            parent_id = comment.parent_id
            if parent_id is None:
                roots.append(comment.id)
            elif parent_id in nodes and parent_id != comment.id:
                nodes[parent_id].children.append(comment.id)
            else:
                logger.debug(f"Comment {comment.id} has missing parent {parent_id}; promoted to root")
                roots.append(comment.id)
        return roots

    @staticmethod
    def _reachable(nodes: dict[str, Comment], start: Iterable[str], seen: set[str]) -> None:
        stack = list(start)
        while stack:
            comment_id = stack.pop()
            if comment_id in seen:
                continue
            seen.add(comment_id)
            stack.extend(nodes[comment_id].children)

    def _promote_cycles(self, nodes: dict[str, Comment], roots: list[str]) -> None:
        """Break parent cycles so every comment is reachable from a root."""
        seen: set[str] = set()
        self._reachable(nodes, roots, seen)
        if len(seen) == len(nodes):
            return

        for comment in list(nodes.values()):
            if comment.id in seen:
                continue
            # Climb until an id repeats; that id sits on the cycle
            climbed: set[str] = set()
            member_id = comment.id
            while member_id not in climbed:
                climbed.add(member_id)
                member_id = nodes[member_id].parent_id
            member = nodes[member_id]
            nodes[member.parent_id].children.remove(member_id)
            roots.append(member_id)
            logger.warning(f"Comment {member_id} is part of a parent cycle; promoted to root")
            self._reachable(nodes, [member_id], seen)

    def _assign_depths(self, nodes: dict[str, Comment], roots: list[str]) -> None:
        stack = [(root_id, 0) for root_id in roots]
        while stack:
            comment_id, depth = stack.pop()
            comment = nodes[comment_id]
            if comment.depth > self._max_depth:
                logger.debug(f"Comment {comment_id} stored at depth {comment.depth}; clamped")
            comment.depth = depth
            child_depth = min(depth + 1, self._max_depth)
            stack.extend((child_id, child_depth) for child_id in comment.children)

    @staticmethod
    def _sort(nodes: dict[str, Comment], roots: list[str],
              key: Callable[[Comment], float]) -> None:
        def by_id(comment_id: str) -> float:
            return key(nodes[comment_id])

        roots.sort(key=by_id)
        for comment in nodes.values():
            if len(comment.children) > 1:
                comment.children.sort(key=by_id)
