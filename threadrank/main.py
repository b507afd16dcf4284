"""ThreadRank application entry point."""

import argparse
import asyncio
import sys
from typing import Optional

from threadrank.adapters.rest_store_adapter import RestStoreAdapter
from threadrank.adapters.sqlite_store_adapter import SQLiteStoreAdapter
from threadrank.adapters.store_adapter import StoreAdapter
from threadrank.core.config_manager import ConfigManager
from threadrank.core.i18n_manager import I18nManager
from threadrank.core.logger import setup_logger
from threadrank.engine.comment_tree import CommentTreeBuilder
from threadrank.engine.feed_pager import FeedPager
from threadrank.engine.mutation_coordinator import OptimisticMutationCoordinator
from threadrank.engine.vote_ledger import VoteLedger
from threadrank.services.discussion_service import DiscussionService


def create_store(config: ConfigManager) -> StoreAdapter:
    """Build the store adapter selected by store.backend."""
    if config.get("store.backend", "sqlite") == "rest":
        return RestStoreAdapter(
            base_url=config.get("store.rest.url", "http://localhost:54321"),
            api_key=config.get("store.rest.api_key", ""),
            timeout=config.get("store.rest.timeout", 30),
            max_retries=config.get("store.rest.max_retries", 3),
            request_interval_sec=config.get("store.rest.request_interval_sec", 0.0),
        )
    return SQLiteStoreAdapter(config.get_db_path())


def create_service(config: ConfigManager, i18n: I18nManager,
                   store: StoreAdapter, user_id: Optional[str] = None) -> DiscussionService:
    """Wire the engine components into a DiscussionService."""
    pager = FeedPager(
        store,
        page_size=config.get("feed.page_size", 25),
        sort_mode=config.get("feed.default_sort", "hot"),
        time_window=config.get("feed.default_time_window", "day"),
    )
    return DiscussionService(
        store=store,
        user_id=user_id or config.get("app.user_id", ""),
        ledger=VoteLedger(),
        coordinator=OptimisticMutationCoordinator(cooldown_ms=config.get_cooldown_ms()),
        tree_builder=CommentTreeBuilder(),
        pager=pager,
        i18n=i18n,
        default_comment_sort=config.get("comments.default_sort", "best"),
    )


async def _show(service: DiscussionService, args: argparse.Namespace) -> None:
    if args.comments:
        await service.load_comments(args.comments)
        for comment in service.visible_comments(args.comments, args.comment_sort):
            print(f"{'  ' * comment.depth}[{comment.score:+d}] {comment.body}")
    else:
        service.change_sort(args.sort)
        service.change_time_window(args.window)
        for _ in range(args.pages):
            await service.next_page()
        for post in service.feed():
            print(f"[{post.score:+d}] {post.title} ({post.comment_count} comments)")

    for notice in service.drain_notices():
        print(notice, file=sys.stderr)
    await service.flush()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Startup sequence:
    1. ConfigManager init (loads or creates settings.yaml)
    2. Logger init (reads log_level from config)
    3. I18nManager init (reads locale from config)
    4. Store adapter creation (sqlite or rest)
    5. Service creation
    6. Print the requested feed or comment thread
    """
    parser = argparse.ArgumentParser(prog="threadrank", description="Browse a ranked discussion feed")
    parser.add_argument("--sort", default=None, help="Feed sort: hot, new, top, controversial, rising")
    parser.add_argument("--window", default=None, help="Time window: hour, day, week, month, year, all")
    parser.add_argument("--pages", type=int, default=1, help="Number of feed pages to load")
    parser.add_argument("--comments", metavar="POST_ID", help="Show the comment thread of a post")
    parser.add_argument("--comment-sort", default=None, help="Comment sort: best, top, new, controversial, old")
    args = parser.parse_args(argv)

    # 1. ConfigManager
    config = ConfigManager()
    args.sort = args.sort or config.get("feed.default_sort", "hot")
    args.window = args.window or config.get("feed.default_time_window", "day")

    # 2. Logger
    logger = setup_logger(
        log_level=config.get("app.log_level", "INFO"),
        mask_logs=config.get("security.mask_logs", True),
    )
    logger.info("ThreadRank starting...")

    # 3. I18nManager
    i18n = I18nManager()
    i18n.load_locale(config.get("app.locale", "en_US"))

    # 4-5. Store and service
    store = create_store(config)
    service = create_service(config, i18n, store)

    # 6. Run
    try:
        asyncio.run(_show(service, args))
    except ValueError as e:
        logger.error(str(e))
        return 2
    finally:
        if isinstance(store, SQLiteStoreAdapter):
            store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
