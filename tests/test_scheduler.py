import asyncio

import pytest

from config import config
from fakes import FakeClock, FakeSession
from records import RefreshProgress, SyncResult
from scheduler import FleetScheduler, compute_backoff, register_configured_feeds


class FakeSynchronizer:
    """Succeeds for every feed except those whose URL is in failing."""

    def __init__(self, failing=(), delay=0.0):
        self.failing = set(failing)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def sync_feed(self, feed, session, unread_limit=None, force_refresh=False):
        self.calls.append((feed.url, force_refresh))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if feed.url in self.failing:
                raise RuntimeError(f"boom {feed.url}")
            return SyncResult(unread=1, total=1)
        finally:
            self.active -= 1


async def add_feeds(db, *urls):
    for url in urls:
        await db.execute('register_feed', url=url)


def make_scheduler(db, synchronizer, clock, progress=None, concurrency=3):
    return FleetScheduler(
        db,
        synchronizer,
        concurrency=concurrency,
        on_progress=progress.append if progress is not None else None,
        clock=clock,
        session_factory=FakeSession,
    )


def test_backoff_doubles_up_to_maximum(monkeypatch):
    monkeypatch.setattr(config, 'FEED_BACKOFF_BASE', 30.0)
    monkeypatch.setattr(config, 'MAX_BACKOFF', 900.0)

    delays = [compute_backoff(count) for count in range(1, 8)]

    assert delays == [30.0, 60.0, 120.0, 240.0, 480.0, 900.0, 900.0]


@pytest.mark.asyncio
async def test_refresh_reports_outcomes_and_progress(db):
    await add_feeds(db, "https://a.example/feed", "https://b.example/feed")
    progress = []
    synchronizer = FakeSynchronizer(failing={"https://b.example/feed"})
    scheduler = make_scheduler(db, synchronizer, FakeClock(), progress)

    outcomes = await scheduler.refresh_all()

    by_url = {outcome.feed.url: outcome for outcome in outcomes}
    assert by_url["https://a.example/feed"].ok
    assert by_url["https://a.example/feed"].result.unread == 1
    assert not by_url["https://b.example/feed"].ok
    assert "boom" in by_url["https://b.example/feed"].error
    assert progress[:-1] == [RefreshProgress(0, 2), RefreshProgress(1, 2), RefreshProgress(2, 2)]
    assert progress[-1] is None


@pytest.mark.asyncio
async def test_failed_feed_is_skipped_while_backing_off(db, monkeypatch):
    monkeypatch.setattr(config, 'REFRESH_ALL_MIN_INTERVAL', 0.0)
    monkeypatch.setattr(config, 'FEED_BACKOFF_BASE', 30.0)
    await add_feeds(db, "https://a.example/feed", "https://b.example/feed")
    clock = FakeClock()
    progress = []
    synchronizer = FakeSynchronizer(failing={"https://b.example/feed"})
    scheduler = make_scheduler(db, synchronizer, clock, progress)

    await scheduler.refresh_all()
    state = scheduler.backoff_for("https://b.example/feed")
    assert state.count == 1
    assert state.next_allowed == clock.now + 30.0

    clock.advance(10)
    progress.clear()
    outcomes = await scheduler.refresh_all()

    assert [outcome.feed.url for outcome in outcomes] == ["https://a.example/feed"]
    assert RefreshProgress(2, 2) in progress
    assert progress[-1] is None

    clock.advance(25)
    outcomes = await scheduler.refresh_all()
    assert len(outcomes) == 2
    assert scheduler.backoff_for("https://b.example/feed").count == 2


@pytest.mark.asyncio
async def test_repeated_failures_grow_backoff_until_forced(db, monkeypatch):
    monkeypatch.setattr(config, 'REFRESH_ALL_MIN_INTERVAL', 0.0)
    monkeypatch.setattr(config, 'FEED_BACKOFF_BASE', 30.0)
    monkeypatch.setattr(config, 'MAX_BACKOFF', 900.0)
    url = "https://b.example/feed"
    await add_feeds(db, url)
    clock = FakeClock()
    synchronizer = FakeSynchronizer(failing={url})
    scheduler = make_scheduler(db, synchronizer, clock)

    delays = []
    for attempt in range(1, 4):
        outcomes = await scheduler.refresh_all()
        assert len(outcomes) == 1 and not outcomes[0].ok
        state = scheduler.backoff_for(url)
        assert state.count == attempt
        delays.append(state.next_allowed - clock.now)
        if attempt < 3:
            clock.advance(delays[-1])

    assert delays == [30.0, 60.0, 120.0]
    assert len(synchronizer.calls) == 3

    clock.advance(delays[-1] - 10)
    assert scheduler.in_backoff(url)
    assert await scheduler.refresh_all() == []
    assert len(synchronizer.calls) == 3

    outcomes = await scheduler.refresh_all(force=True)
    assert len(outcomes) == 1
    assert synchronizer.calls[-1] == (url, True)
    assert scheduler.backoff_for(url).count == 4


@pytest.mark.asyncio
async def test_forced_refresh_ignores_backoff_and_success_clears_it(db, monkeypatch):
    monkeypatch.setattr(config, 'REFRESH_ALL_MIN_INTERVAL', 0.0)
    await add_feeds(db, "https://a.example/feed")
    synchronizer = FakeSynchronizer(failing={"https://a.example/feed"})
    scheduler = make_scheduler(db, synchronizer, FakeClock())

    await scheduler.refresh_all()
    assert scheduler.in_backoff("https://a.example/feed")

    synchronizer.failing.clear()
    outcomes = await scheduler.refresh_all(force=True)

    assert outcomes[0].ok
    assert synchronizer.calls[-1] == ("https://a.example/feed", True)
    assert scheduler.backoff_for("https://a.example/feed") is None


@pytest.mark.asyncio
async def test_backoff_is_keyed_by_canonical_url(db):
    scheduler = make_scheduler(db, FakeSynchronizer(), FakeClock())
    scheduler.record_failure("HTTPS://Example.com/feed")
    assert scheduler.in_backoff("https://example.com/feed")


@pytest.mark.asyncio
async def test_refresh_is_throttled_unless_forced(db, monkeypatch):
    monkeypatch.setattr(config, 'REFRESH_ALL_MIN_INTERVAL', 180.0)
    await add_feeds(db, "https://a.example/feed")
    clock = FakeClock()
    synchronizer = FakeSynchronizer()
    scheduler = make_scheduler(db, synchronizer, clock)

    assert len(await scheduler.refresh_all()) == 1
    clock.advance(60)
    assert await scheduler.refresh_all() == []
    assert len(synchronizer.calls) == 1

    assert len(await scheduler.refresh_all(force=True)) == 1
    clock.advance(179)
    assert await scheduler.refresh_all() == []
    clock.advance(2)
    assert len(await scheduler.refresh_all()) == 1


@pytest.mark.asyncio
async def test_worker_pool_bounds_concurrency(db):
    await add_feeds(db, *[f"https://f{n}.example/feed" for n in range(7)])
    synchronizer = FakeSynchronizer(delay=0.01)
    scheduler = make_scheduler(db, synchronizer, FakeClock(), concurrency=2)

    outcomes = await scheduler.refresh_all()

    assert len(outcomes) == 7
    assert synchronizer.max_active == 2


@pytest.mark.asyncio
async def test_refresh_without_feeds_returns_empty(db):
    progress = []
    scheduler = make_scheduler(db, FakeSynchronizer(), FakeClock(), progress)
    assert await scheduler.refresh_all() == []
    assert progress == []


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_abort_refresh(db):
    await add_feeds(db, "https://a.example/feed")

    def broken(progress):
        raise ValueError("ui went away")

    scheduler = FleetScheduler(db, FakeSynchronizer(), on_progress=broken, clock=FakeClock(),
                               session_factory=FakeSession)
    outcomes = await scheduler.refresh_all()
    assert outcomes[0].ok


@pytest.mark.asyncio
async def test_watch_loop_stops_cleanly_on_cancel(db):
    await add_feeds(db, "https://a.example/feed")
    synchronizer = FakeSynchronizer()
    scheduler = make_scheduler(db, synchronizer, FakeClock())

    task = asyncio.create_task(scheduler.run_forever(interval_minutes=60))
    for _ in range(50):
        if synchronizer.calls:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    await asyncio.wait_for(task, timeout=1)

    assert len(synchronizer.calls) == 1


@pytest.mark.asyncio
async def test_configured_feeds_are_registered(db, monkeypatch):
    monkeypatch.setattr(config, 'FEED_SOURCES', {
        'one': {'url': 'https://one.example/feed', 'folder': 'News'},
        'two': {'url': 'https://two.example/feed', 'folder': None},
    })

    assert await register_configured_feeds(db) == 2
    assert await register_configured_feeds(db) == 2

    feeds = await db.execute('list_feeds')
    assert [feed['url'] for feed in feeds] == ['https://one.example/feed', 'https://two.example/feed']
    assert feeds[0]['folder_id'] == await db.execute('get_or_create_folder', name='News')
    assert feeds[1]['folder_id'] is None
