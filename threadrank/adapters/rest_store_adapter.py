"""PostgREST (Supabase-style) store adapter with rate limiting and backoff."""

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from threadrank.adapters.store_adapter import StoreAdapter
from threadrank.core.exceptions import (
    InvalidCommentError,
    StoreRateLimitError,
    StoreRequestError,
    StoreUnavailableError,
)
from threadrank.core.types import (
    DELETED_MARKER,
    FEED_SORT_MODES,
    TARGET_TYPES,
    WINDOWED_SORT_MODES,
    Comment,
    Post,
)
from threadrank.engine.comment_tree import next_reply_depth

logger = logging.getLogger("threadrank")

_APP_VERSION = "1.0.0"

ORDER_COLUMNS = {
    "hot": "hot_score.desc",
    "new": "created_at.desc",
    "top": "score.desc",
    "controversial": "controversy_score.desc",
    "rising": "created_at.desc",
}

WINDOW_SECONDS = {
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}


class RateLimiter:
    """Thread-safe minimum-interval rate limiter.

    Enforces a minimum time gap between requests, including requests
    issued concurrently from worker threads. On 429 and server errors,
    uses exponential backoff.
    """

    def __init__(self, interval_sec: float = 0.0, max_retries: int = 3,
                 backoff_base_sec: float = 1.0):
        self._interval = interval_sec
        self._max_retries = max_retries
        self._backoff_base = backoff_base_sec
        self._last_request_time: float = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        """Wait for the next free slot and claim it.

        Callers queue on the lock, so two threads never pass in the
        same interval.
        """
        with self._lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._interval:
                sleep_time = self._interval - elapsed
                logger.debug(f"Rate limiter: sleeping {sleep_time:.1f}s")
                time.sleep(sleep_time)
            self._last_request_time = time.time()

    def mark_request(self) -> None:
        """Record that a request was just made."""
        with self._lock:
            self._last_request_time = time.time()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def get_backoff_time(self, attempt: int) -> float:
        """Exponential backoff: base * 2^attempt. E.g., 1s -> 2s -> 4s"""
        return self._backoff_base * (2 ** attempt)


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if not value:
        return 0.0
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _format_timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


class RestStoreAdapter(StoreAdapter):
    """Talks to a PostgREST endpoint (e.g. Supabase `/rest/v1`).

    Blocking HTTP calls run in a worker thread via asyncio.to_thread so
    the event loop keeps serving other actions while a call is pending.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30,
        max_retries: int = 3,
        request_interval_sec: float = 0.0,
        backoff_base_sec: float = 1.0,
        clock=time.time,
    ):
        self._base_url = base_url.rstrip("/") + "/rest/v1"
        self._timeout = timeout
        self._clock = clock
        self._rate_limiter = RateLimiter(request_interval_sec, max_retries, backoff_base_sec)
        self._session = requests.Session()
        self._session.headers.update({
            "User-Agent": f"threadrank/{_APP_VERSION}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if api_key:
            self._session.headers.update({
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
            })

    def _request(self, method: str, path: str, params: Optional[dict] = None,
                 payload: Any = None, prefer: Optional[str] = None) -> Any:
        """Send one request with rate limiting, retries and error mapping.

        Returns:
            Decoded JSON body, or None for empty responses
        """
        url = f"{self._base_url}/{path}"
        headers = {"Prefer": prefer} if prefer else None

        self._rate_limiter.wait()

        last_error: Optional[str] = None
        for attempt in range(self._rate_limiter.max_retries + 1):
            can_retry = attempt < self._rate_limiter.max_retries
            try:
                self._rate_limiter.mark_request()
                response = self._session.request(
                    method, url, params=params, json=payload,
                    headers=headers, timeout=self._timeout,
                )
            except requests.RequestException as e:
                last_error = str(e)
                if can_retry:
                    backoff = self._rate_limiter.get_backoff_time(attempt)
                    logger.warning(f"Store request failed: {e}. Retrying in {backoff}s")
                    time.sleep(backoff)
                    continue
                break

            if response.status_code == 429:
                if can_retry:
                    backoff = self._rate_limiter.get_backoff_time(attempt)
                    logger.warning(f"Rate limited (429). Backoff: {backoff}s (attempt {attempt + 1})")
                    time.sleep(backoff)
                    continue
                raise StoreRateLimitError("Store rate limit exceeded after max retries")

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                if can_retry:
                    backoff = self._rate_limiter.get_backoff_time(attempt)
                    logger.warning(f"Store error {response.status_code}. Retrying in {backoff}s")
                    time.sleep(backoff)
                    continue
                break

            if response.status_code >= 400:
                raise StoreRequestError(
                    f"{method} {path} rejected: HTTP {response.status_code} {response.text[:200]}",
                    status_code=response.status_code,
                )

            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise StoreRequestError(f"{method} {path} returned invalid JSON: {e}")

        raise StoreUnavailableError(f"Store unreachable: {last_error}")

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    async def cast_vote(self, target_id: str, target_type: str,
                        user_id: str, value: int) -> bool:
        if target_type not in TARGET_TYPES:
            raise ValueError(f"Unknown target type '{target_type}'")
        try:
            if value == 0:
                await self._call("DELETE", "votes", params={
                    "user_id": f"eq.{user_id}",
                    "target_id": f"eq.{target_id}",
                    "target_type": f"eq.{target_type}",
                })
            else:
                await self._call(
                    "POST", "votes",
                    params={"on_conflict": "user_id,target_id,target_type"},
                    payload={
                        "user_id": user_id,
                        "target_id": target_id,
                        "target_type": target_type,
                        "value": value,
                    },
                    prefer="resolution=merge-duplicates,return=minimal",
                )
        except StoreRequestError as e:
            logger.warning(f"Vote on {target_type} {target_id} refused: {e.message}")
            return False
        return True

    async def fetch_posts(self, sort_mode: str, time_window: str,
                          page: int, page_size: int) -> list[Post]:
        if sort_mode not in FEED_SORT_MODES:
            raise ValueError(f"Unknown sort mode '{sort_mode}'")

        params = {
            "select": "*",
            "deleted": "eq.false",
            "order": f"{ORDER_COLUMNS[sort_mode]},created_at.desc",
            "offset": (max(page, 1) - 1) * page_size,
            "limit": page_size,
        }
        window = WINDOW_SECONDS.get(time_window)
        if sort_mode in WINDOWED_SORT_MODES and window is not None:
            params["created_at"] = f"gte.{_format_timestamp(self._clock() - window)}"

        rows = await self._call("GET", "posts", params=params) or []
        return [self._row_to_post(row) for row in rows]

    async def fetch_comments(self, post_id: str) -> list[Comment]:
        rows = await self._call("GET", "comments", params={
            "select": "*",
            "post_id": f"eq.{post_id}",
        }) or []
        return [self._row_to_comment(row) for row in rows]

    async def increment_karma(self, author_id: str, bucket: str, delta: int) -> None:
        if bucket not in TARGET_TYPES:
            raise ValueError(f"Unknown karma bucket '{bucket}'")
        await self._call("POST", "rpc/increment_karma", payload={
            "p_user_id": author_id,
            "p_bucket": bucket,
            "p_delta": delta,
        })

    async def fetch_user_votes(self, user_id: str,
                               target_ids: list[str]) -> dict[str, tuple[str, int]]:
        if not target_ids:
            return {}
        rows = await self._call("GET", "votes", params={
            "select": "target_id,target_type,value",
            "user_id": f"eq.{user_id}",
            "target_id": f"in.({','.join(target_ids)})",
        }) or []
        return {row["target_id"]: (row["target_type"], row["value"]) for row in rows}

    async def fetch_viewer_flags(self, user_id: str,
                                 post_ids: list[str]) -> dict[str, tuple[bool, bool]]:
        if not post_ids:
            return {}
        saved = await self._member_ids("saved_posts", user_id, post_ids)
        hidden = await self._member_ids("hidden_posts", user_id, post_ids)
        return {post_id: (post_id in saved, post_id in hidden) for post_id in post_ids}

    async def _member_ids(self, table: str, user_id: str, post_ids: list[str]) -> set[str]:
        rows = await self._call("GET", table, params={
            "select": "post_id",
            "user_id": f"eq.{user_id}",
            "post_id": f"in.({','.join(post_ids)})",
        }) or []
        return {row["post_id"] for row in rows}

    async def create_comment(self, post_id: str, author_id: str, body: str,
                             parent_id: Optional[str] = None) -> Comment:
        depth = 0
        if parent_id is not None:
            rows = await self._call("GET", "comments", params={
                "select": "id,post_id,depth",
                "id": f"eq.{parent_id}",
            })
            if not rows:
                raise InvalidCommentError(f"Parent comment {parent_id} not found")
            parent = Comment(id=parent_id, post_id=rows[0]["post_id"], depth=rows[0].get("depth") or 0)
            depth = next_reply_depth(parent)

        rows = await self._call(
            "POST", "comments",
            payload={
                "post_id": post_id,
                "author_id": author_id,
                "parent_id": parent_id,
                "content": body,
                "depth": depth,
            },
            prefer="return=representation",
        )
        if not rows:
            raise StoreRequestError(f"Comment insert on post {post_id} returned no row")
        return self._row_to_comment(rows[0])

    async def update_comment(self, comment_id: str, body: str) -> Comment:
        rows = await self._call(
            "PATCH", "comments",
            params={"id": f"eq.{comment_id}", "deleted": "eq.false"},
            payload={
                "content": body,
                "edited": True,
                "updated_at": _format_timestamp(self._clock()),
            },
            prefer="return=representation",
        )
        if not rows:
            raise InvalidCommentError(f"Comment {comment_id} does not exist")
        return self._row_to_comment(rows[0])

    async def delete_comment(self, comment_id: str) -> None:
        await self._call(
            "PATCH", "comments",
            params={"id": f"eq.{comment_id}"},
            payload={
                "deleted": True,
                "deleted_at": _format_timestamp(self._clock()),
                "content": DELETED_MARKER,
            },
        )

    async def set_saved(self, user_id: str, post_id: str, saved: bool) -> None:
        await self._set_membership("saved_posts", user_id, post_id, saved)

    async def set_hidden(self, user_id: str, post_id: str, hidden: bool) -> None:
        await self._set_membership("hidden_posts", user_id, post_id, hidden)

    async def _set_membership(self, table: str, user_id: str, post_id: str,
                              member: bool) -> None:
        if member:
            await self._call(
                "POST", table,
                params={"on_conflict": "user_id,post_id"},
                payload={"user_id": user_id, "post_id": post_id},
                prefer="resolution=ignore-duplicates,return=minimal",
            )
        else:
            await self._call("DELETE", table, params={
                "user_id": f"eq.{user_id}",
                "post_id": f"eq.{post_id}",
            })

    @staticmethod
    def _row_to_post(row: dict) -> Post:
        return Post(
            id=row["id"],
            author_id=row.get("author_id", ""),
            score=row.get("score", 0),
            upvotes=row.get("upvotes", 0),
            downvotes=row.get("downvotes", 0),
            controversy_score=float(row.get("controversy_score") or 0),
            created_utc=_parse_timestamp(row.get("created_at")),
            community_id=row.get("community_id", ""),
            title=row.get("title", ""),
            body=row.get("content") or "",
            comment_count=row.get("comment_count", 0),
            deleted=bool(row.get("deleted", False)),
        )

    @staticmethod
    def _row_to_comment(row: dict) -> Comment:
        return Comment(
            id=row["id"],
            author_id=row.get("author_id", ""),
            score=row.get("score", 0),
            upvotes=row.get("upvotes", 0),
            downvotes=row.get("downvotes", 0),
            controversy_score=float(row.get("controversy_score") or 0),
            created_utc=_parse_timestamp(row.get("created_at")),
            post_id=row.get("post_id", ""),
            parent_id=row.get("parent_id"),
            body=row.get("content") or "",
            depth=row.get("depth") or 0,
            deleted=bool(row.get("deleted", False)),
            edited=bool(row.get("edited", False)),
        )
