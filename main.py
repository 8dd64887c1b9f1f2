#!/usr/bin/env python3
"""
Feed Synchronization Command Line

Entry point for the feed synchronization engine:
- refresh: refresh every subscribed feed once
- subscribe: add a feed through the relay and run its first sync
- status: show subscriptions, unread counts and last errors
- watch: refresh on a fixed interval until interrupted
- mark-read: mark all articles (or one feed's articles) as read
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import FeedAlreadySubscribedError, FeedSyncError
from fetcher import FeedFetcher
from models import DatabaseQueue
from records import RefreshProgress
from scheduler import FleetScheduler, register_configured_feeds
from sync import FeedSynchronizer
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-sync-main")


def log_progress(progress: Optional[RefreshProgress]) -> None:
    if progress is None:
        logger.debug("Refresh progress cleared")
    else:
        logger.info(f"Progress: {progress.completed}/{progress.total}")


class FeedSyncApp:
    """Wires the store, fetcher, synchronizer and scheduler together."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher()
        self.synchronizer = FeedSynchronizer(self.db, self.fetcher)
        self.scheduler = FleetScheduler(self.db, self.synchronizer, on_progress=log_progress)

    async def __aenter__(self) -> "FeedSyncApp":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.db.stop()

    @trace_span("cli.refresh", tracer_name="main", attr_from_args=lambda self, force=False: {"refresh.force": bool(force)})
    async def refresh(self, force: bool = False) -> bool:
        """Refresh all feeds once; True when every attempted feed succeeded."""
        await register_configured_feeds(self.db)
        outcomes = await self.scheduler.refresh_all(force=force)
        for outcome in outcomes:
            if not outcome.ok:
                logger.error(f"❌ {outcome.feed.title or outcome.feed.url}: {outcome.error}")
        return all(outcome.ok for outcome in outcomes)

    async def subscribe(self, url: str, folder: Optional[str] = None) -> bool:
        try:
            async with ClientSession() as session:
                feed_id = await self.synchronizer.subscribe(url, session, folder=folder)
        except FeedAlreadySubscribedError as e:
            logger.warning(str(e))
            return False
        except FeedSyncError as e:
            logger.error(f"❌ Could not subscribe to {url}: {e}")
            return False
        logger.info(f"✅ Subscribed to {url} (feed {feed_id})")
        return True

    async def watch(self, interval_minutes: Optional[float] = None) -> None:
        await register_configured_feeds(self.db)
        await self.scheduler.run_forever(interval_minutes)

    async def mark_read(self, feed_id: Optional[int] = None) -> int:
        count = await self.db.execute('mark_articles_read', feed_id=feed_id)
        logger.info(f"Marked {count} articles as read")
        return count

    async def check_status(self) -> Dict[str, Any]:
        """Collect per-feed counts and errors from the store."""
        feeds: List[Dict[str, Any]] = []
        for row in await self.db.execute('list_feeds'):
            feeds.append({
                'id': row['id'],
                'title': row.get('title') or row['url'],
                'url': row['url'],
                'unread': await self.db.execute('count_articles', feed_id=row['id'], read=0),
                'total': await self.db.execute('count_articles', feed_id=row['id']),
                'last_fetched': row.get('last_fetched') or 0,
                'error': row.get('error'),
            })
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'feeds': feeds,
            'total_unread': sum(feed['unread'] for feed in feeds),
            'config': config.get_config_summary(),
        }


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print("\n📊 Feed Sync Status")
    print(f"⏰ {status['timestamp']}")
    print(f"📰 Feeds: {len(status['feeds'])}  📬 Unread: {status['total_unread']}")
    for feed in status['feeds']:
        if feed['last_fetched']:
            fetched = datetime.fromtimestamp(feed['last_fetched'], timezone.utc).isoformat()
        else:
            fetched = "never"
        print(f"   [{feed['id']}] {feed['title']}: {feed['unread']}/{feed['total']} unread, fetched {fetched}")
        if feed['error']:
            print(f"       ⚠️ {feed['error']}")


async def run_command(args: argparse.Namespace) -> bool:
    async with FeedSyncApp() as app:
        if args.mode == 'refresh':
            return await app.refresh(force=args.force)
        if args.mode == 'subscribe':
            return await app.subscribe(args.url, folder=args.folder)
        if args.mode == 'status':
            print_status(await app.check_status())
            return True
        if args.mode == 'watch':
            await app.watch(args.interval)
            return True
        if args.mode == 'mark-read':
            await app.mark_read(args.feed)
            return True
    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Synchronization Engine')
    subparsers = parser.add_subparsers(dest='mode', required=True, help='Operation mode')

    refresh = subparsers.add_parser('refresh', help='Refresh all subscribed feeds once')
    refresh.add_argument('--force', action='store_true',
                         help='Ignore the refresh throttle and per-feed backoff, bypass relay cache')

    subscribe = subparsers.add_parser('subscribe', help='Subscribe to a feed URL')
    subscribe.add_argument('url', help='Feed URL')
    subscribe.add_argument('--folder', type=str, help='Folder name for the new feed')

    subparsers.add_parser('status', help='Show feeds, unread counts and errors')

    watch = subparsers.add_parser('watch', help='Refresh on a fixed interval until interrupted')
    watch.add_argument('--interval', type=float, default=None,
                       help=f'Minutes between refreshes (default {config.FETCH_INTERVAL_MINUTES})')

    mark_read = subparsers.add_parser('mark-read', help='Mark articles as read')
    mark_read.add_argument('--feed', type=int, default=None, help='Only this feed id')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        success = asyncio.run(run_command(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Feed sync shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
