#!/usr/bin/env python3
"""
Single-feed synchronization.

FeedSynchronizer runs one feed through the pipeline: fetch through the relay,
refresh feed metadata, reconcile items against stored history, split new
articles into unread and archived, and persist everything for the feed in one
transaction. It also handles new subscriptions.
"""

from dataclasses import asdict
from typing import Optional
from urllib.parse import urlparse

from aiohttp import ClientSession

from archiver import partition_new_articles
from config import config, get_logger
from errors import FeedAlreadySubscribedError, InvalidFeedUrlError
from fetcher import FeedFetcher
from reconciler import ArticleReconciler
from records import Feed, SyncResult
from telemetry import init_telemetry, trace_span
from urls import normalize_feed_url
from utils import validate_url

logger = get_logger("sync")
init_telemetry("feed-sync-sync")

DEFAULT_FEED_TITLE = "Unknown Feed"


class FeedSynchronizer:
    """Fetches, reconciles and stores one feed at a time."""

    def __init__(self, db, fetcher: Optional[FeedFetcher] = None, reconciler: Optional[ArticleReconciler] = None):
        self.db = db
        self.fetcher = fetcher or FeedFetcher()
        self.reconciler = reconciler or ArticleReconciler(db)

    @trace_span(
        "sync_feed",
        tracer_name="sync",
        attr_from_args=lambda self, feed, session, unread_limit=None, force_refresh=False: {
            "feed.id": int(feed.id),
            "feed.url": feed.url,
            "feed.force_refresh": bool(force_refresh),
        },
    )
    async def sync_feed(self, feed: Feed, session: ClientSession, unread_limit: Optional[int] = None,
                        force_refresh: bool = False) -> SyncResult:
        """Synchronize one feed and return what changed.

        On failure the error message is recorded on the feed and the
        exception propagates to the caller.
        """
        limit = config.UNREAD_LIMIT if unread_limit is None else unread_limit
        try:
            data = await self.fetcher.fetch(feed.url, session, force_refresh=force_refresh)

            title = feed.title or (data.get('title') or "").strip() or DEFAULT_FEED_TITLE
            await self.db.execute('update_feed_success', feed_id=feed.id, title=title)
            feed.title = title

            items = data.get('items')
            if not isinstance(items, list):
                items = []

            reconciled = await self.reconciler.reconcile(feed, items)
            unread, archived = partition_new_articles(reconciled.new_articles, limit)

            applied = await self.db.execute(
                'apply_feed_sync',
                feed_id=feed.id,
                link_backfills=[asdict(backfill) for backfill in reconciled.link_backfills],
                articles=[asdict(article) for article in unread + archived],
            )
        except Exception as e:
            logger.error(f"Sync failed for feed {feed.id} ({feed.url}): {e}")
            try:
                await self.db.execute('update_feed_error', feed_id=feed.id, error=str(e) or e.__class__.__name__)
            except Exception as store_error:
                logger.error(f"Could not record error for feed {feed.id}: {store_error}")
            raise

        result = SyncResult(
            unread=len(unread),
            archived=len(archived),
            total=len(items),
            backfilled=applied.get('backfilled', 0),
        )
        if result.unread or result.archived or result.backfilled:
            logger.info(
                f"Feed {feed.id} '{title}': {result.unread} unread, {result.archived} archived, "
                f"{result.backfilled} links backfilled ({result.total} items)"
            )
        else:
            logger.debug(f"Feed {feed.id} '{title}': nothing new ({result.total} items)")
        return result

    async def _find_existing(self, url: str) -> Optional[dict]:
        existing = await self.db.execute('get_feed_by_url', url=url)
        if existing is None:
            normalized = normalize_feed_url(url)
            if normalized != url:
                existing = await self.db.execute('get_feed_by_url', url=normalized)
        return existing

    @trace_span(
        "subscribe",
        tracer_name="sync",
        attr_from_args=lambda self, url, session, folder=None: {"feed.url": url},
    )
    async def subscribe(self, url: str, session: ClientSession, folder: Optional[str] = None) -> int:
        """Subscribe to url, run the first sync and return the new feed id.

        Raises:
            InvalidFeedUrlError: if url is not an http(s) URL.
            FeedAlreadySubscribedError: if the URL is already subscribed.
            FetchError: if the feed cannot be fetched through the relay.
        """
        url = url.strip()
        if not validate_url(url):
            raise InvalidFeedUrlError(f"Not a valid feed URL: {url!r}")
        existing = await self._find_existing(url)
        if existing is not None:
            raise FeedAlreadySubscribedError(url, existing['id'])

        data = await self.fetcher.fetch(url, session)

        title = (data.get('title') or "").strip() or urlparse(url).hostname or url
        website = (data.get('link') or "").strip() or url
        folder_id = None
        if folder:
            folder_id = await self.db.execute('get_or_create_folder', name=folder)

        feed_id = await self.db.execute('add_feed', url=url, title=title, website=website, folder_id=folder_id)
        logger.info(f"Subscribed to '{title}' ({url}) as feed {feed_id}")

        feed = Feed(id=feed_id, url=url, title=title, website=website, folder_id=folder_id)
        try:
            await self.sync_feed(feed, session)
        except Exception as e:
            # The subscription stands; the error is already recorded on the feed
            logger.warning(f"Initial sync of feed {feed_id} failed: {e}")
        return feed_id
