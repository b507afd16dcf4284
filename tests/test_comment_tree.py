"""Tests for CommentTreeBuilder and comment creation helpers."""

import pytest

from threadrank.core.exceptions import InvalidCommentError, MaxDepthExceeded
from threadrank.engine.comment_tree import (
    CommentTreeBuilder,
    next_reply_depth,
    prepare_comment_body,
)

from conftest import make_comment

NOW = 1_700_000_000.0


def build(comments, sort_mode="top", max_depth=5):
    return CommentTreeBuilder(max_depth=max_depth).build(comments, sort_mode, post_id="p1", now=NOW)


def chain(length):
    return [make_comment(f"c{i}", parent_id=f"c{i - 1}" if i > 1 else None) for i in range(1, length + 1)]


class TestDepth:
    def test_chain_of_six_reaches_depth_five(self):
        forest = build(chain(6))
        assert [forest.get(f"c{i}").depth for i in range(1, 7)] == [0, 1, 2, 3, 4, 5]

    def test_deeper_chain_is_clamped(self):
        forest = build(chain(7))
        assert forest.get("c7").depth == 5
        assert forest.get("c7").parent_id == "c6"
        assert forest.get("c6").children == ["c7"]

    def test_stored_depth_is_ignored(self):
        comments = [make_comment("a"), make_comment("b", parent_id="a", depth=9)]
        assert build(comments).get("b").depth == 1

    def test_very_deep_chain_does_not_recurse(self):
        forest = build(chain(5000))
        assert forest.size == 5000
        assert len(list(forest.walk())) == 5000


class TestStructure:
    def test_empty_input(self):
        forest = build([])
        assert forest.roots == []
        assert forest.size == 0

    def test_orphan_promoted_to_root(self):
        comments = [make_comment("a"), make_comment("orphan", parent_id="gone")]
        forest = build(comments)
        assert set(forest.roots) == {"a", "orphan"}
        assert forest.get("orphan").depth == 0

    def test_self_parent_promoted_to_root(self):
        forest = build([make_comment("a", parent_id="a")])
        assert forest.roots == ["a"]

    def test_parent_cycle_is_broken(self):
        comments = [
            make_comment("a", parent_id="b"),
            make_comment("b", parent_id="a"),
            make_comment("c", parent_id="b"),
        ]
        forest = build(comments)
        assert len(forest.roots) == 1
        assert {c.id for c in forest.walk()} == {"a", "b", "c"}

    def test_duplicate_ids_keep_first(self):
        comments = [make_comment("a", body="first"), make_comment("a", body="second")]
        forest = build(comments)
        assert forest.size == 1
        assert forest.get("a").body == "first"

    def test_input_not_mutated(self):
        comments = [make_comment("a"), make_comment("b", parent_id="a")]
        build(comments)
        assert comments[0].children == []

    def test_deleted_parent_keeps_children(self):
        comments = [
            make_comment("a", deleted=True, body="secret"),
            make_comment("b", parent_id="a"),
        ]
        forest = build(comments)
        assert forest.get("a").body == "[deleted]"
        assert forest.get("a").children == ["b"]


class TestOrdering:
    def test_siblings_sorted_by_score(self):
        comments = [
            make_comment("root"),
            make_comment("low", parent_id="root", score=1),
            make_comment("high", parent_id="root", score=9),
        ]
        assert build(comments).get("root").children == ["high", "low"]

    def test_sort_is_stable_for_ties(self):
        comments = [make_comment(f"c{i}", score=3) for i in range(5)]
        assert build(comments).roots == [f"c{i}" for i in range(5)]

    def test_walk_is_preorder(self):
        comments = [
            make_comment("a", score=2),
            make_comment("b", score=1),
            make_comment("a1", parent_id="a"),
        ]
        assert [c.id for c in build(comments).walk()] == ["a", "a1", "b"]

    def test_walk_skips_collapsed_descendants(self):
        forest = build(chain(4))
        assert [c.id for c in forest.walk(frozenset({"c2"}))] == ["c1", "c2"]
        assert forest.count_descendants("c2") == 2

    def test_best_prefers_newer_at_equal_score(self):
        comments = [
            make_comment("old", score=5, created_utc=NOW - 86400),
            make_comment("fresh", score=5, created_utc=NOW - 60),
        ]
        assert build(comments, sort_mode="best").roots == ["fresh", "old"]

    def test_unknown_sort_raises(self):
        with pytest.raises(ValueError):
            build([], sort_mode="random")


class TestReplyRules:
    def test_top_level_depth(self):
        assert next_reply_depth(None) == 0

    def test_reply_below_limit(self):
        assert next_reply_depth(make_comment("p", depth=4)) == 5

    def test_reply_at_limit_rejected(self):
        with pytest.raises(MaxDepthExceeded):
            next_reply_depth(make_comment("p", depth=5))

    def test_body_is_cleaned(self):
        assert prepare_comment_body("  hi <script>alert(1)</script> there ") == "hi  there"

    def test_body_is_truncated(self):
        assert len(prepare_comment_body("x" * 20000)) == 10000

    def test_empty_body_rejected(self):
        with pytest.raises(InvalidCommentError):
            prepare_comment_body("   ")
