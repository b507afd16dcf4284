"""Shared test fixtures for ThreadRank tests."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from threadrank.core.config_manager import DEFAULT_CONFIG
from threadrank.core.types import Comment, Post


class FakeClock:
    """Manually advanced clock for cooldown and age calculations."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def config_file(tmp_dir):
    """Create a temporary settings.yaml and return its path."""
    config_dir = tmp_dir / "config"
    config_dir.mkdir(parents=True)
    config_path = config_dir / "settings.yaml"

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(dict(DEFAULT_CONFIG), f, default_flow_style=False, sort_keys=False)

    return config_path


@pytest.fixture
def tmp_db_path(tmp_dir):
    """Provide a temporary database path."""
    return tmp_dir / "test.db"


@pytest.fixture
def locale_dir(tmp_dir):
    """Create temporary locale directory with test JSON files."""
    loc_dir = tmp_dir / "locales"
    loc_dir.mkdir(parents=True)

    ko_data = {
        "errors": {
            "vote_failed": "투표에 실패했습니다",
            "depth_exceeded": "답글은 {max_depth}단계까지만 가능합니다",
        },
        "notices": {"post_saved": "저장됨"},
    }
    en_data = {
        "errors": {
            "vote_failed": "Vote failed",
            "depth_exceeded": "Replies can only be nested {max_depth} levels deep",
        },
        "notices": {"post_saved": "Post saved"},
    }

    with open(loc_dir / "ko_KR.json", "w", encoding="utf-8") as f:
        json.dump(ko_data, f, ensure_ascii=False)
    with open(loc_dir / "en_US.json", "w", encoding="utf-8") as f:
        json.dump(en_data, f, ensure_ascii=False)

    return loc_dir


def make_post(post_id="p1", score=0, upvotes=0, downvotes=0,
              created_utc=1_700_000_000.0, author_id="author", **kwargs):
    return Post(
        id=post_id, author_id=author_id, score=score, upvotes=upvotes,
        downvotes=downvotes, created_utc=created_utc,
        title=kwargs.pop("title", f"Post {post_id}"), **kwargs,
    )


def make_comment(comment_id, parent_id=None, score=0, created_utc=1_700_000_000.0,
                 post_id="p1", author_id="author", **kwargs):
    return Comment(
        id=comment_id, author_id=author_id, score=score, created_utc=created_utc,
        post_id=post_id, parent_id=parent_id,
        body=kwargs.pop("body", f"comment {comment_id}"), **kwargs,
    )
