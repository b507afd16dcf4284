"""Local SQLite discussion store (offline mode and integration tests)."""

import asyncio
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from threadrank.adapters.store_adapter import StoreAdapter
from threadrank.core.exceptions import DatabaseError, InvalidCommentError
from threadrank.core.types import (
    DELETED_MARKER,
    FEED_SORT_MODES,
    TARGET_TYPES,
    TIME_WINDOWS,
    WINDOWED_SORT_MODES,
    Comment,
    Karma,
    Post,
)
from threadrank.engine.comment_tree import next_reply_depth
from threadrank.engine.score_model import controversy_score, hot_score
from threadrank.engine.vote_ledger import transition_to

logger = logging.getLogger("threadrank")

WINDOW_SECONDS = {
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
    "all": None,
}

_TABLES = {"post": "posts", "comment": "comments"}


class SQLiteStoreAdapter(StoreAdapter):
    """StoreAdapter over a single SQLite connection.

    Vote casting updates the vote row, the target's counters and its
    controversy score in one transaction. Karma is only touched through
    increment_karma.

    The coroutine methods run their queries in a worker thread via
    asyncio.to_thread. All access to the connection is serialized with
    an RLock.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            # The connection is shared with worker threads; _lock guards it
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
            logger.info(f"SQLite store initialized with db_path: {db_path}")
        except (OSError, sqlite3.Error) as e:
            raise DatabaseError(f"Failed to initialize database: {e}")

    def _init_schema(self) -> None:
        """Create database tables if they don't exist."""
        with self._lock, self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    id             TEXT PRIMARY KEY,
                    username       TEXT DEFAULT '',
                    karma_post     INTEGER DEFAULT 0,
                    karma_comment  INTEGER DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS posts (
                    id                 TEXT PRIMARY KEY,
                    author_id          TEXT NOT NULL,
                    community_id       TEXT DEFAULT '',
                    title              TEXT NOT NULL,
                    body               TEXT DEFAULT '',
                    score              INTEGER DEFAULT 0,
                    upvotes            INTEGER DEFAULT 0,
                    downvotes          INTEGER DEFAULT 0,
                    controversy_score  REAL DEFAULT 0,
                    comment_count      INTEGER DEFAULT 0,
                    deleted            INTEGER DEFAULT 0,
                    created_utc        REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS comments (
                    id                 TEXT PRIMARY KEY,
                    post_id            TEXT NOT NULL REFERENCES posts(id),
                    author_id          TEXT NOT NULL,
                    parent_id          TEXT,
                    body               TEXT NOT NULL,
                    depth              INTEGER DEFAULT 0,
                    score              INTEGER DEFAULT 0,
                    upvotes            INTEGER DEFAULT 0,
                    downvotes          INTEGER DEFAULT 0,
                    controversy_score  REAL DEFAULT 0,
                    deleted            INTEGER DEFAULT 0,
                    edited             INTEGER DEFAULT 0,
                    created_utc        REAL NOT NULL,
                    updated_utc        REAL
                );
                CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id);

                CREATE TABLE IF NOT EXISTS votes (
                    user_id      TEXT NOT NULL,
                    target_id    TEXT NOT NULL,
                    target_type  TEXT NOT NULL CHECK (target_type IN ('post', 'comment')),
                    value        INTEGER NOT NULL CHECK (value IN (-1, 1)),
                    created_utc  REAL,
                    PRIMARY KEY (user_id, target_id, target_type)
                );

                CREATE TABLE IF NOT EXISTS saved_posts (
                    user_id  TEXT NOT NULL,
                    post_id  TEXT NOT NULL,
                    PRIMARY KEY (user_id, post_id)
                );

                CREATE TABLE IF NOT EXISTS hidden_posts (
                    user_id  TEXT NOT NULL,
                    post_id  TEXT NOT NULL,
                    PRIMARY KEY (user_id, post_id)
                );
            """)
        logger.debug("Database schema initialized")

    # ----- seeding helpers -----

    def add_user(self, user_id: str, username: str = "") -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT OR IGNORE INTO users (id, username) VALUES (?, ?)",
                    (user_id, username),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to add user {user_id}: {e}")

    def add_post(self, post: Post) -> None:
        """Insert a post as-is (INSERT OR REPLACE)."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO posts (
                        id, author_id, community_id, title, body, score, upvotes,
                        downvotes, controversy_score, comment_count, deleted, created_utc
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        post.id, post.author_id, post.community_id, post.title,
                        post.body, post.score, post.upvotes, post.downvotes,
                        post.controversy_score, post.comment_count,
                        int(post.deleted), post.created_utc,
                    ),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to add post {post.id}: {e}")

    def add_comment(self, comment: Comment) -> None:
        """Insert a comment as-is, bypassing depth checks (legacy data)."""
        try:
            with self._lock, self._conn:
                self._insert_comment(comment)
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to add comment {comment.id}: {e}")

    def _insert_comment(self, comment: Comment) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO comments (
                id, post_id, author_id, parent_id, body, depth, score, upvotes,
                downvotes, controversy_score, deleted, edited, created_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                comment.id, comment.post_id, comment.author_id, comment.parent_id,
                comment.body, comment.depth, comment.score, comment.upvotes,
                comment.downvotes, comment.controversy_score, int(comment.deleted),
                int(comment.edited), comment.created_utc,
            ),
        )

    def get_post(self, post_id: str) -> Optional[Post]:
        row = self._fetch_one("SELECT * FROM posts WHERE id = ?", (post_id,), f"post {post_id}")
        return self._row_to_post(row) if row else None

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        row = self._fetch_one("SELECT * FROM comments WHERE id = ?", (comment_id,), f"comment {comment_id}")
        return self._row_to_comment(row) if row else None

    def get_vote(self, user_id: str, target_id: str) -> int:
        row = self._fetch_one(
            "SELECT value FROM votes WHERE user_id = ? AND target_id = ?",
            (user_id, target_id), f"vote on {target_id}",
        )
        return row["value"] if row else 0

    def get_karma(self, user_id: str) -> Karma:
        row = self._fetch_one(
            "SELECT karma_post, karma_comment FROM users WHERE id = ?",
            (user_id,), f"karma for {user_id}",
        )
        if row is None:
            return Karma()
        return Karma(post=row["karma_post"], comment=row["karma_comment"])

    def get_saved_post_ids(self, user_id: str) -> set[str]:
        return self._member_ids("saved_posts", user_id)

    def get_hidden_post_ids(self, user_id: str) -> set[str]:
        return self._member_ids("hidden_posts", user_id)

    def _fetch_one(self, query: str, params: tuple, what: str) -> Optional[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to read {what}: {e}")

    def _member_ids(self, table: str, user_id: str,
                    post_ids: Optional[list[str]] = None) -> set[str]:
        query = f"SELECT post_id FROM {table} WHERE user_id = ?"
        params: tuple = (user_id,)
        if post_ids is not None:
            query += f" AND post_id IN ({', '.join('?' for _ in post_ids)})"
            params += tuple(post_ids)
        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to read {table} for {user_id}: {e}")
        return {row["post_id"] for row in rows}

    # ----- StoreAdapter -----

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        return await asyncio.to_thread(self._locked, func, *args)

    def _locked(self, func: Callable[..., Any], *args) -> Any:
        with self._lock:
            return func(*args)

    async def cast_vote(self, target_id: str, target_type: str,
                        user_id: str, value: int) -> bool:
        if target_type not in TARGET_TYPES:
            raise ValueError(f"Unknown target type '{target_type}'")
        return await self._run(self._cast_vote, target_id, target_type, user_id, value)

    def _cast_vote(self, target_id: str, target_type: str, user_id: str, value: int) -> bool:
        table = _TABLES[target_type]
        try:
            with self._conn:
                target = self._conn.execute(
                    f"SELECT upvotes, downvotes FROM {table} WHERE id = ?", (target_id,)
                ).fetchone()
                if target is None:
                    logger.warning(f"Vote on unknown {target_type} {target_id} refused")
                    return False

                row = self._conn.execute(
                    "SELECT value FROM votes WHERE user_id = ? AND target_id = ? AND target_type = ?",
                    (user_id, target_id, target_type),
                ).fetchone()
                transition = transition_to(row["value"] if row else 0, value)

                if value == 0:
                    self._conn.execute(
                        "DELETE FROM votes WHERE user_id = ? AND target_id = ? AND target_type = ?",
                        (user_id, target_id, target_type),
                    )
                else:
                    self._conn.execute(
                        """
                        INSERT INTO votes (user_id, target_id, target_type, value, created_utc)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, target_id, target_type)
                        DO UPDATE SET value = excluded.value
                        """,
                        (user_id, target_id, target_type, value, self._clock()),
                    )

                upvotes = target["upvotes"] + transition.upvote_delta
                downvotes = target["downvotes"] + transition.downvote_delta
                self._conn.execute(
                    f"""
                    UPDATE {table}
                    SET score = score + ?, upvotes = ?, downvotes = ?, controversy_score = ?
                    WHERE id = ?
                    """,
                    (
                        transition.score_delta, upvotes, downvotes,
                        controversy_score(upvotes, downvotes), target_id,
                    ),
                )
            logger.debug(f"Stored vote {value:+d} by {user_id} on {target_type} {target_id}")
            return True
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to cast vote on {target_id}: {e}")

    async def fetch_posts(self, sort_mode: str, time_window: str,
                          page: int, page_size: int) -> list[Post]:
        if sort_mode not in FEED_SORT_MODES:
            raise ValueError(f"Unknown sort mode '{sort_mode}'")
        if time_window not in TIME_WINDOWS:
            raise ValueError(f"Unknown time window '{time_window}'")
        return await self._run(self._fetch_posts, sort_mode, time_window, page, page_size)

    def _fetch_posts(self, sort_mode: str, time_window: str,
                     page: int, page_size: int) -> list[Post]:
        now = self._clock()
        query = "SELECT * FROM posts WHERE deleted = 0"
        params: tuple = ()
        window = WINDOW_SECONDS[time_window]
        if sort_mode in WINDOWED_SORT_MODES and window is not None:
            query += " AND created_utc >= ?"
            params = (now - window,)

        try:
            rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to fetch posts: {e}")

        posts = [self._row_to_post(row) for row in rows]
        # Newest first breaks ties in every mode
        posts.sort(key=lambda p: (p.created_utc, p.id), reverse=True)
        if sort_mode == "hot":
            posts.sort(key=lambda p: hot_score(p.upvotes, p.downvotes, now - p.created_utc),
                       reverse=True)
        elif sort_mode == "top":
            posts.sort(key=lambda p: p.score, reverse=True)
        elif sort_mode == "controversial":
            posts.sort(key=lambda p: controversy_score(p.upvotes, p.downvotes), reverse=True)

        start = (max(page, 1) - 1) * page_size
        return posts[start:start + page_size]

    async def fetch_comments(self, post_id: str) -> list[Comment]:
        return await self._run(self._fetch_comments, post_id)

    def _fetch_comments(self, post_id: str) -> list[Comment]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM comments WHERE post_id = ?", (post_id,)
            ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to fetch comments for post {post_id}: {e}")
        return [self._row_to_comment(row) for row in rows]

    async def increment_karma(self, author_id: str, bucket: str, delta: int) -> None:
        if bucket not in TARGET_TYPES:
            raise ValueError(f"Unknown karma bucket '{bucket}'")
        await self._run(self._increment_karma, author_id, bucket, delta)

    def _increment_karma(self, author_id: str, bucket: str, delta: int) -> None:
        column = f"karma_{bucket}"
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT OR IGNORE INTO users (id) VALUES (?)", (author_id,)
                )
                self._conn.execute(
                    f"UPDATE users SET {column} = {column} + ? WHERE id = ?",
                    (delta, author_id),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to update karma for {author_id}: {e}")

    async def fetch_user_votes(self, user_id: str,
                               target_ids: list[str]) -> dict[str, tuple[str, int]]:
        if not target_ids:
            return {}
        return await self._run(self._fetch_user_votes, user_id, list(target_ids))

    def _fetch_user_votes(self, user_id: str, target_ids: list[str]) -> dict[str, tuple[str, int]]:
        placeholders = ", ".join("?" for _ in target_ids)
        try:
            rows = self._conn.execute(
                f"""
                SELECT target_id, target_type, value FROM votes
                WHERE user_id = ? AND target_id IN ({placeholders})
                """,
                (user_id, *target_ids),
            ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to fetch votes for {user_id}: {e}")
        return {row["target_id"]: (row["target_type"], row["value"]) for row in rows}

    async def fetch_viewer_flags(self, user_id: str,
                                 post_ids: list[str]) -> dict[str, tuple[bool, bool]]:
        if not post_ids:
            return {}
        return await self._run(self._fetch_viewer_flags, user_id, list(post_ids))

    def _fetch_viewer_flags(self, user_id: str, post_ids: list[str]) -> dict[str, tuple[bool, bool]]:
        saved = self._member_ids("saved_posts", user_id, post_ids)
        hidden = self._member_ids("hidden_posts", user_id, post_ids)
        return {post_id: (post_id in saved, post_id in hidden) for post_id in post_ids}

    async def create_comment(self, post_id: str, author_id: str, body: str,
                             parent_id: Optional[str] = None) -> Comment:
        return await self._run(self._create_comment, post_id, author_id, body, parent_id)

    def _create_comment(self, post_id: str, author_id: str, body: str,
                        parent_id: Optional[str]) -> Comment:
        if self.get_post(post_id) is None:
            raise InvalidCommentError(f"Post {post_id} does not exist")

        parent = None
        if parent_id is not None:
            parent = self.get_comment(parent_id)
            if parent is None or parent.post_id != post_id:
                raise InvalidCommentError(f"Parent comment {parent_id} not found on post {post_id}")

        comment = Comment(
            id=uuid.uuid4().hex,
            author_id=author_id,
            created_utc=self._clock(),
            post_id=post_id,
            parent_id=parent_id,
            body=body,
            depth=next_reply_depth(parent),
        )
        try:
            with self._conn:
                self._insert_comment(comment)
                self._conn.execute(
                    "UPDATE posts SET comment_count = comment_count + 1 WHERE id = ?",
                    (post_id,),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to create comment on post {post_id}: {e}")
        logger.debug(f"Created comment {comment.id} on post {post_id} at depth {comment.depth}")
        return comment

    async def update_comment(self, comment_id: str, body: str) -> Comment:
        return await self._run(self._update_comment, comment_id, body)

    def _update_comment(self, comment_id: str, body: str) -> Comment:
        comment = self.get_comment(comment_id)
        if comment is None or comment.deleted:
            raise InvalidCommentError(f"Comment {comment_id} does not exist")
        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE comments SET body = ?, edited = 1, updated_utc = ? WHERE id = ?",
                    (body, self._clock(), comment_id),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to update comment {comment_id}: {e}")
        return self.get_comment(comment_id)

    async def delete_comment(self, comment_id: str) -> None:
        await self._run(self._delete_comment, comment_id)

    def _delete_comment(self, comment_id: str) -> None:
        comment = self.get_comment(comment_id)
        if comment is None:
            raise InvalidCommentError(f"Comment {comment_id} does not exist")
        if comment.deleted:
            return
        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE comments SET deleted = 1, body = ? WHERE id = ?",
                    (DELETED_MARKER, comment_id),
                )
                self._conn.execute(
                    "UPDATE posts SET comment_count = MAX(comment_count - 1, 0) WHERE id = ?",
                    (comment.post_id,),
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to delete comment {comment_id}: {e}")

    async def set_saved(self, user_id: str, post_id: str, saved: bool) -> None:
        await self._run(self._set_membership, "saved_posts", user_id, post_id, saved)

    async def set_hidden(self, user_id: str, post_id: str, hidden: bool) -> None:
        await self._run(self._set_membership, "hidden_posts", user_id, post_id, hidden)

    def _set_membership(self, table: str, user_id: str, post_id: str, member: bool) -> None:
        try:
            with self._conn:
                if member:
                    self._conn.execute(
                        f"INSERT OR IGNORE INTO {table} (user_id, post_id) VALUES (?, ?)",
                        (user_id, post_id),
                    )
                else:
                    self._conn.execute(
                        f"DELETE FROM {table} WHERE user_id = ? AND post_id = ?",
                        (user_id, post_id),
                    )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to update {table} for post {post_id}: {e}")

    def close(self) -> None:
        """Close the database connection."""
        try:
            with self._lock:
                self._conn.close()
            logger.info("Database connection closed")
        except sqlite3.Error as e:
            logger.error(f"Error closing database connection: {e}")

    @staticmethod
    def _row_to_post(row: sqlite3.Row) -> Post:
        return Post(
            id=row["id"],
            author_id=row["author_id"],
            score=row["score"],
            upvotes=row["upvotes"],
            downvotes=row["downvotes"],
            controversy_score=row["controversy_score"],
            created_utc=row["created_utc"],
            community_id=row["community_id"],
            title=row["title"],
            body=row["body"],
            comment_count=row["comment_count"],
            deleted=bool(row["deleted"]),
        )

    @staticmethod
    def _row_to_comment(row: sqlite3.Row) -> Comment:
        return Comment(
            id=row["id"],
            author_id=row["author_id"],
            score=row["score"],
            upvotes=row["upvotes"],
            downvotes=row["downvotes"],
            controversy_score=row["controversy_score"],
            created_utc=row["created_utc"],
            post_id=row["post_id"],
            parent_id=row["parent_id"],
            body=row["body"],
            depth=row["depth"],
            deleted=bool(row["deleted"]),
            edited=bool(row["edited"]),
        )
