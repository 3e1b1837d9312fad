import pytest

from conftest import FakeOracle
from config import config
from errors import FeedFetchError, FeedNotFoundError
from models import Item, ItemKind, ProcessingStatus
from monitor import ChannelMonitor
from processing import ProcessingScheduler
from scheduler import ScheduledJob


class FakePoller:
    """Serves scripted feed outcomes per channel."""

    def __init__(self, latest=None, recent=None, oracle=None):
        self.latest = latest or {}
        self.recent = recent or {}
        self.oracle = oracle or FakeOracle()
        self.fetched = []

    async def fetch_latest_item(self, channel_id):
        self.fetched.append(channel_id)
        outcome = self.latest.get(channel_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return None
        return Item(**vars(outcome))

    async def fetch_recent_items(self, channel_id, limit):
        outcome = self.recent.get(channel_id, [])
        if isinstance(outcome, Exception):
            raise outcome
        return [Item(**vars(item)) for item in outcome[:limit]]


class CountingWorker:
    def __init__(self, db):
        self.db = db
        self.processed = []

    async def process_item(self, item):
        self.processed.append(item.item_id)
        await self.db.execute(
            'mark_item_completed', item_id=item.item_id, summary="s", transcript="t", completed_at=1)
        return ProcessingStatus.COMPLETED


class FakeScheduler:
    def __init__(self):
        self.scheduled = []

    def schedule(self, interval_seconds, fn, name=None):
        job = ScheduledJob(name, interval_seconds, fn)
        self.scheduled.append(job)
        return job


def _item(item_id, channel_id="C1", kind=ItemKind.NONE):
    return Item(item_id=item_id, channel_id=channel_id, title=f"Title {item_id}", kind=kind)


def _monitor(db, poller, worker=None):
    worker = worker or CountingWorker(db)
    return ChannelMonitor(db, poller, ProcessingScheduler(worker, batch_size=3)), worker


@pytest.mark.asyncio
async def test_new_item_is_created_processed_and_cursor_advanced(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V1")}))

    stats = await monitor.run_cycle()

    assert stats["new_items"] == 1
    assert stats["processed"] == 1
    assert worker.processed == ["V1"]
    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.cursor == "V1"
    item = await db.execute('get_item', item_id="V1")
    assert item.processing_status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_repeated_cycles_do_not_duplicate_work(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V1")}))

    await monitor.run_cycle()
    stats = await monitor.run_cycle()

    assert stats["new_items"] == 0
    assert stats["processed"] == 0
    assert worker.processed == ["V1"]


@pytest.mark.asyncio
async def test_404_deactivates_channel_and_excludes_its_items(db):
    await db.execute('register_channel', channel_id="C1", title="Gone")
    await db.execute('create_item', item=_item("OLD"))
    poller = FakePoller(latest={"C1": FeedNotFoundError("C1", "Feed not found (HTTP 404)")})
    monitor, worker = _monitor(db, poller)

    stats = await monitor.run_cycle()

    assert stats["deactivated"] == 1
    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.is_active is False
    assert "404" in channel.last_error_message
    assert channel.last_error_at is not None
    assert worker.processed == []


@pytest.mark.asyncio
async def test_inactive_channel_reactivates_on_successful_fetch(db):
    await db.execute('register_channel', channel_id="C1", title="Back")
    await db.execute('update_channel_active_status', channel_id="C1", is_active=False, error_message="404")
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V2")}))

    await monitor.run_cycle()

    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.is_active is True
    assert channel.last_error_message is None
    assert worker.processed == ["V2"]


@pytest.mark.asyncio
async def test_transient_fetch_error_changes_nothing(db):
    await db.execute('register_channel', channel_id="C1", title="Flaky")
    await db.execute('update_channel_cursor', channel_id="C1", cursor_value="V0")
    poller = FakePoller(latest={"C1": FeedFetchError("C1", "HTTP 500")})
    monitor, _ = _monitor(db, poller)

    stats = await monitor.run_cycle()

    assert stats["errors"] == 1
    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.is_active is True
    assert channel.cursor == "V0"


@pytest.mark.asyncio
async def test_known_item_resyncs_cursor_without_creating(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    existing = _item("V1")
    await db.execute('create_item', item=existing)
    await db.execute('mark_item_completed', item_id="V1", summary="s", transcript="t", completed_at=1)
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V1")}))

    stats = await monitor.run_cycle()

    assert stats["new_items"] == 0
    assert worker.processed == []
    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.cursor == "V1"


@pytest.mark.asyncio
async def test_channels_without_actionable_entries_are_skipped(db):
    await db.execute('register_channel', channel_id="C1", title="Quiet")
    monitor, worker = _monitor(db, FakePoller(latest={"C1": None}))
    stats = await monitor.run_cycle()
    assert stats["new_items"] == 0
    assert worker.processed == []


@pytest.mark.asyncio
async def test_pending_carryover_is_retried(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    await db.execute('update_channel_cursor', channel_id="C1", cursor_value="V1")
    await db.execute('create_item', item=_item("V1"))
    await db.execute('mark_item_failed', item_id="V1", retry_count=1, error_message="x", terminal=False)
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V1")}))

    stats = await monitor.run_cycle()

    assert stats["carryover"] == 1
    assert worker.processed == ["V1"]


@pytest.mark.asyncio
async def test_abandoned_processing_item_is_picked_up_again(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    await db.execute('update_channel_cursor', channel_id="C1", cursor_value="V1")
    await db.execute('create_item', item=_item("V1"))
    await db.execute('mark_item_processing', item_id="V1", started_at=1)
    monitor, worker = _monitor(db, FakePoller(latest={"C1": _item("V1")}))

    stats = await monitor.run_cycle()

    assert stats["carryover"] == 1
    assert worker.processed == ["V1"]


@pytest.mark.asyncio
async def test_live_item_waits_until_broadcast_ends(db):
    await db.execute('register_channel', channel_id="C1", title="Streams")
    oracle = FakeOracle({"L1": ItemKind.LIVE})
    poller = FakePoller(latest={"C1": _item("L1", kind=ItemKind.LIVE)}, oracle=oracle)
    monitor, worker = _monitor(db, poller)

    first = await monitor.run_cycle()
    assert first["new_items"] == 1
    assert worker.processed == []
    assert (await db.execute('get_item', item_id="L1")).kind == ItemKind.LIVE

    # Broadcast ends
    oracle.kinds["L1"] = ItemKind.NONE
    second = await monitor.run_cycle()
    assert second["reclassified"] == 1
    assert worker.processed == ["L1"]

    third = await monitor.run_cycle()
    assert third["processed"] == 0
    assert worker.processed == ["L1"]


@pytest.mark.asyncio
async def test_add_channel_backfills_recent_items(db, monkeypatch):
    monkeypatch.setattr(config, 'BACKFILL_ITEMS', 2)
    poller = FakePoller(recent={"C9": [_item("N1", "C9"), _item("N2", "C9"), _item("N3", "C9")]})
    monitor, _ = _monitor(db, poller)

    result = await monitor.add_channel("C9", "New Channel", user_id=7)

    assert result == {"channel_id": "C9", "created": True, "backfilled": 2}
    channel = await db.execute('get_channel', channel_id="C9")
    assert channel.cursor == "N1"
    assert await db.execute('get_item', item_id="N2") is not None
    assert await db.execute('get_item', item_id="N3") is None
    subscribers = await db.execute('list_subscribers', channel_id="C9")
    assert [s.user_id for s in subscribers] == [7]
    assert len(monitor.processing) == 2

    # Adding again only subscribes
    again = await monitor.add_channel("C9", "New Channel", user_id=8)
    assert again["created"] is False
    assert again["backfilled"] == 0


@pytest.mark.asyncio
async def test_add_channel_with_missing_feed_deactivates(db):
    poller = FakePoller(recent={"C9": FeedNotFoundError("C9", "Feed not found (HTTP 404)")})
    monitor, _ = _monitor(db, poller)

    result = await monitor.add_channel("C9")
    assert result["backfilled"] == 0
    channel = await db.execute('get_channel', channel_id="C9")
    assert channel.is_active is False


@pytest.mark.asyncio
async def test_start_registers_timers_and_runs_first_cycle(db):
    await db.execute('register_channel', channel_id="C1", title="Chan")
    poller = FakePoller(latest={"C1": _item("V1")})
    worker = CountingWorker(db)

    class Retry:
        async def process_ready(self):
            return 0

        def cleanup_old_entries(self):
            return 0

    scheduler = FakeScheduler()
    monitor = ChannelMonitor(db, poller, ProcessingScheduler(worker), retry_queue=Retry(), scheduler=scheduler)

    await monitor.start()

    assert [job.name for job in scheduler.scheduled] == ["poll_cycle", "push_retry_scan", "push_retry_housekeeping"]
    assert [job.interval_seconds for job in scheduler.scheduled] == [
        config.POLL_INTERVAL_MINUTES * 60,
        config.RETRY_SCAN_INTERVAL_SECONDS,
        config.RETRY_HOUSEKEEPING_INTERVAL_MINUTES * 60,
    ]
    assert worker.processed == ["V1"]
    assert monitor.is_running

    monitor.stop()
    assert not monitor.is_running
    assert all(job.cancelled for job in scheduler.scheduled)
