#!/usr/bin/env python3
"""
Fleet refresh scheduler.

Refreshes every subscribed feed with a small pool of concurrent workers:

- A global throttle rejects full refreshes started too soon after the last one
- Failing feeds back off exponentially and are skipped until their delay passes
- Progress is reported after every feed and cleared when the run ends
- One feed's failure never aborts the run
- A watch loop repeats the refresh on a fixed interval
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from records import Feed, FeedOutcome, RefreshProgress
from sync import FeedSynchronizer
from telemetry import init_telemetry, trace_span
from urls import normalize_feed_url
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("feed-sync-scheduler")

ProgressCallback = Callable[[Optional[RefreshProgress]], None]


@dataclass
class FeedBackoff:
    """Consecutive failure count and the earliest time the feed may be fetched again."""

    count: int
    next_allowed: float


def compute_backoff(count: int, base: Optional[float] = None, maximum: Optional[float] = None) -> float:
    """Delay in seconds after count consecutive failures (count >= 1)."""
    base = config.FEED_BACKOFF_BASE if base is None else base
    maximum = config.MAX_BACKOFF if maximum is None else maximum
    return min(maximum, base * (2 ** max(count - 1, 0)))


class FleetScheduler:
    """Coordinates full refreshes of all subscribed feeds."""

    def __init__(self, db, synchronizer: FeedSynchronizer, concurrency: Optional[int] = None,
                 on_progress: Optional[ProgressCallback] = None, clock: Callable[[], float] = time.time,
                 session_factory: Callable[[], ClientSession] = ClientSession):
        self.db = db
        self.synchronizer = synchronizer
        self.concurrency = max(1, concurrency if concurrency is not None else config.FLEET_CONCURRENCY)
        self.on_progress = on_progress
        self.clock = clock
        self.session_factory = session_factory
        self._failures: Dict[str, FeedBackoff] = {}
        self._last_refresh_all_at: Optional[float] = None

    # Backoff state

    def backoff_for(self, url: str) -> Optional[FeedBackoff]:
        return self._failures.get(normalize_feed_url(url))

    def in_backoff(self, url: str, now: Optional[float] = None) -> bool:
        state = self.backoff_for(url)
        if state is None:
            return False
        now = self.clock() if now is None else now
        return now < state.next_allowed

    def record_failure(self, url: str) -> FeedBackoff:
        key = normalize_feed_url(url)
        previous = self._failures.get(key)
        count = previous.count + 1 if previous else 1
        delay = compute_backoff(count)
        state = FeedBackoff(count=count, next_allowed=self.clock() + delay)
        self._failures[key] = state
        logger.warning(f"Backing off {url} for {format_duration(delay)} after {count} consecutive failures")
        return state

    def record_success(self, url: str) -> None:
        self._failures.pop(normalize_feed_url(url), None)

    def _report(self, progress: Optional[RefreshProgress]) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")

    # Refresh

    @trace_span(
        "refresh_all",
        tracer_name="scheduler",
        attr_from_args=lambda self, force=False: {"refresh.force": bool(force)},
    )
    async def refresh_all(self, force: bool = False) -> List[FeedOutcome]:
        """Refresh every subscribed feed and return one outcome per attempted feed.

        Returns an empty list when throttled. Feeds skipped because of backoff
        count towards progress but produce no outcome.
        """
        now = self.clock()
        if not force and self._last_refresh_all_at is not None:
            elapsed = now - self._last_refresh_all_at
            if elapsed < config.REFRESH_ALL_MIN_INTERVAL:
                logger.info(
                    f"Skipping refresh: last run started {format_duration(elapsed)} ago "
                    f"(minimum {format_duration(config.REFRESH_ALL_MIN_INTERVAL)})"
                )
                return []
        self._last_refresh_all_at = now

        rows = await self.db.execute('list_feeds')
        feeds = [Feed.from_row(row) for row in rows]
        if not feeds:
            logger.info("No feeds to refresh")
            return []

        total = len(feeds)
        outcomes: List[FeedOutcome] = []
        completed = 0
        queue: asyncio.Queue = asyncio.Queue()
        for feed in feeds:
            queue.put_nowait(feed)

        logger.info(f"Refreshing {total} feeds with {min(self.concurrency, total)} workers (force={force})")
        start_time = self.clock()
        self._report(RefreshProgress(completed=0, total=total))

        async def worker(session: ClientSession) -> None:
            nonlocal completed
            while True:
                try:
                    feed = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = await self._refresh_one(feed, session, force)
                    if outcome is not None:
                        outcomes.append(outcome)
                finally:
                    completed += 1
                    self._report(RefreshProgress(completed=completed, total=total))
                    queue.task_done()

        try:
            async with self.session_factory() as session:
                workers = [
                    asyncio.create_task(worker(session))
                    for _ in range(min(self.concurrency, total))
                ]
                await asyncio.gather(*workers)
        finally:
            self._report(None)

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        skipped = total - len(outcomes)
        logger.info(
            f"Refresh finished in {format_duration(self.clock() - start_time)}: "
            f"{len(outcomes) - failed} ok, {failed} failed, {skipped} skipped"
        )
        return outcomes

    async def _refresh_one(self, feed: Feed, session: ClientSession, force: bool) -> Optional[FeedOutcome]:
        if not force and self.in_backoff(feed.url):
            state = self.backoff_for(feed.url)
            logger.debug(f"Skipping {feed.url}: in backoff for {format_duration(state.next_allowed - self.clock())}")
            return None
        try:
            result = await self.synchronizer.sync_feed(feed, session, force_refresh=force)
        except Exception as e:
            self.record_failure(feed.url)
            return FeedOutcome(feed=feed, error=str(e) or e.__class__.__name__)
        self.record_success(feed.url)
        return FeedOutcome(feed=feed, result=result)

    # Watch loop

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, seconds: {"sleep.seconds": float(seconds)},
    )
    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def run_forever(self, interval_minutes: Optional[float] = None) -> None:
        """Refresh all feeds every interval_minutes until cancelled."""
        minutes = config.FETCH_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        interval = max(float(minutes) * 60, 1.0)
        logger.info(f"Watching feeds every {format_duration(interval)}")
        while True:
            try:
                await self.refresh_all()
            except asyncio.CancelledError:
                logger.info("Watch loop cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"Error in scheduled refresh: {e}")
            try:
                await self._sleep(interval)
            except asyncio.CancelledError:
                logger.info("Watch loop cancelled - shutting down")
                break


async def register_configured_feeds(db) -> int:
    """Ensure every feed listed in feeds.yaml exists in the store.

    Returns the number of configured feeds.
    """
    for slug, source in config.FEED_SOURCES.items():
        folder_id = None
        if source.get('folder'):
            folder_id = await db.execute('get_or_create_folder', name=source['folder'])
        feed_id = await db.execute('register_feed', url=source['url'], title="", website=source['url'],
                                   folder_id=folder_id)
        logger.debug(f"Configured feed '{slug}' -> {feed_id}")
    return len(config.FEED_SOURCES)
