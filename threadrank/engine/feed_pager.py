"""Feed pagination state: sort mode, time window, de-duplication."""

import logging
from typing import Optional

from threadrank.adapters.store_adapter import StoreAdapter
from threadrank.core.types import (
    FEED_SORT_MODES,
    TIME_WINDOWS,
    WINDOWED_SORT_MODES,
    FeedCursor,
    PageResult,
    Post,
)

logger = logging.getLogger("threadrank")


class FeedPager:
    """Decides which page to request next and filters what comes back.

    Every reset bumps a generation counter. A page response that arrives
    for an older generation is discarded; the request itself is not
    cancelled.
    """

    def __init__(self, store: StoreAdapter, page_size: int = 25,
                 sort_mode: str = "hot", time_window: str = "day"):
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self._check_sort(sort_mode)
        self._check_window(time_window)
        self._store = store
        self._page_size = page_size
        self._cursor = FeedCursor(sort_mode=sort_mode, time_window=time_window)
        self._items: list[Post] = []
        self._generation = 0
        self._inflight_generation: Optional[int] = None

    @staticmethod
    def _check_sort(sort_mode: str) -> None:
        if sort_mode not in FEED_SORT_MODES:
            raise ValueError(f"Unknown sort mode '{sort_mode}'. Must be one of {FEED_SORT_MODES}")

    @staticmethod
    def _check_window(time_window: str) -> None:
        if time_window not in TIME_WINDOWS:
            raise ValueError(f"Unknown time window '{time_window}'. Must be one of {TIME_WINDOWS}")

    @property
    def cursor(self) -> FeedCursor:
        return self._cursor

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def items(self) -> list[Post]:
        """Posts accepted so far, in first-seen order."""
        return list(self._items)

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def is_loading(self) -> bool:
        return self._inflight_generation == self._generation

    def reset(self) -> None:
        """Start over from page 1 and invalidate in-flight responses."""
        self._generation += 1
        self._cursor = FeedCursor(
            sort_mode=self._cursor.sort_mode,
            time_window=self._cursor.time_window,
        )
        self._items = []
        logger.debug(f"Feed reset (generation {self._generation})")

    def change_sort(self, sort_mode: str) -> None:
        self._check_sort(sort_mode)
        if sort_mode == self._cursor.sort_mode:
            return
        self._cursor.sort_mode = sort_mode
        self.reset()

    def change_time_window(self, time_window: str) -> None:
        """Record the window; only reload when the sort mode uses it."""
        self._check_window(time_window)
        if time_window == self._cursor.time_window:
            return
        self._cursor.time_window = time_window
        if self._cursor.sort_mode in WINDOWED_SORT_MODES:
            self.reset()

    async def next_page(self) -> PageResult:
        """Fetch the next page.

        Returns an empty result without calling the store when the feed
        is exhausted or a request for this generation is already in
        flight. The page number only advances when a response is
        accepted.

        Raises:
            PersistenceFailure: the store call failed; the cursor is unchanged
        """
        cursor = self._cursor
        if not cursor.has_more or self.is_loading:
            return PageResult(page=cursor.page, has_more=cursor.has_more)

        generation = self._generation
        page = cursor.page
        self._inflight_generation = generation
        try:
            posts = await self._store.fetch_posts(
                cursor.sort_mode, cursor.time_window, page, self._page_size
            )
        finally:
            if self._inflight_generation == generation:
                self._inflight_generation = None

        if generation != self._generation:
            logger.debug(f"Discarded stale page {page} (generation {generation} != {self._generation})")
            return PageResult(page=page, has_more=self._cursor.has_more, stale=True)

        accepted = []
        for post in posts:
            if post.id in cursor.seen_ids:
                continue
            cursor.seen_ids.add(post.id)
            accepted.append(post)
        self._items.extend(accepted)

        cursor.page += 1
        if len(posts) < self._page_size:
            cursor.has_more = False

        logger.info(
            f"Loaded feed page {page} ({cursor.sort_mode}/{cursor.time_window}): "
            f"{len(accepted)} new of {len(posts)}"
        )
        return PageResult(items=accepted, page=page, has_more=cursor.has_more)
