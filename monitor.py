#!/usr/bin/env python3
"""
Channel monitor: the poll cycle and its timers.

Each cycle scans every channel in order, gates the newest actionable entry
against the channel cursor and the item store, collects retry-eligible and
no-longer-live items, and drains the processing queue. The monitor also owns
the push retry scan and its housekeeping sweep.
"""

from time import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import FeedFetchError, FeedNotFoundError
from models import Channel, DatabaseQueue, Item, ItemKind, ProcessingStatus
from processing import ProcessingScheduler
from scheduler import IntervalScheduler, ScheduledJob
from telemetry import trace_span
from utils import format_duration

logger = get_logger("monitor")

# Extra time past the summary timeout before a processing item counts as abandoned
STALE_PROCESSING_GRACE_SECONDS = 60


class ChannelMonitor:
    """Owns the processing queue, the channel scan and the timer handles."""

    def __init__(
        self,
        db: DatabaseQueue,
        poller,
        processing: ProcessingScheduler,
        retry_queue=None,
        scheduler: Optional[IntervalScheduler] = None,
    ):
        self.db = db
        self.poller = poller
        self.processing = processing
        self.retry_queue = retry_queue
        self.scheduler = scheduler or IntervalScheduler()
        self.jobs: List[ScheduledJob] = []

    @property
    def is_running(self) -> bool:
        return bool(self.jobs)

    async def start(self, run_immediately: bool = True) -> None:
        """Register the poll, retry-scan and housekeeping timers."""
        if self.jobs:
            logger.info("Monitor already running")
            return
        logger.info(f"🚀 Starting channel monitor (poll every {config.POLL_INTERVAL_MINUTES} min)")
        self.jobs.append(self.scheduler.schedule(config.POLL_INTERVAL_MINUTES * 60, self.run_cycle, name="poll_cycle"))
        if self.retry_queue is not None:
            self.jobs.append(self.scheduler.schedule(
                config.RETRY_SCAN_INTERVAL_SECONDS, self.retry_queue.process_ready, name="push_retry_scan"))
            self.jobs.append(self.scheduler.schedule(
                config.RETRY_HOUSEKEEPING_INTERVAL_MINUTES * 60, self.retry_queue.cleanup_old_entries, name="push_retry_housekeeping"))
        if run_immediately:
            await self.jobs[0].run_once()

    def stop(self) -> None:
        for job in self.jobs:
            job.cancel()
        if self.jobs:
            logger.info("🛑 Channel monitor stopped")
        self.jobs = []

    @trace_span("monitor.poll_cycle", tracer_name="monitor")
    async def run_cycle(self) -> Dict[str, int]:
        """One poll cycle over all channels, followed by a queue drain."""
        started = time()
        stats = {"channels": 0, "new_items": 0, "deactivated": 0, "errors": 0, "carryover": 0, "reclassified": 0, "processed": 0}

        channels: List[Channel] = await self.db.execute('list_channels')
        stats["channels"] = len(channels)
        logger.info(f"🔍 Poll cycle started for {len(channels)} channels")

        # Channels are scanned one at a time
        for channel in channels:
            outcome = await self.check_channel(channel)
            if outcome in stats:
                stats[outcome] += 1

        # Items left in processing by a crashed or cancelled worker
        stale_cutoff = int(time() - config.SUMMARY_TIMEOUT_SECONDS - STALE_PROCESSING_GRACE_SECONDS)
        requeued = await self.db.execute('requeue_stale_items', started_before=stale_cutoff)
        if requeued:
            logger.warning(f"♻️ Returned {requeued} stale processing items to pending")

        carryover: List[Item] = await self.db.execute(
            'list_retry_eligible_items', max_retries=config.MAX_PROCESSING_RETRIES)
        stats["carryover"] = self.processing.enqueue(carryover)

        reclassified = await self.reclassify_live_items()
        stats["reclassified"] = self.processing.enqueue(reclassified)

        stats["processed"] = await self.processing.drain()
        logger.info(f"✅ Poll cycle finished in {format_duration(time() - started)}: {stats}")
        return stats

    @trace_span(
        "monitor.check_channel",
        tracer_name="monitor",
        attr_from_args=lambda self, channel: {"channel.id": channel.channel_id},
    )
    async def check_channel(self, channel: Channel) -> Optional[str]:
        """Fetch one channel and gate its newest actionable item. Returns a stats key or None."""
        try:
            candidate = await self.poller.fetch_latest_item(channel.channel_id)
        except FeedNotFoundError as e:
            logger.warning(f"🚫 Deactivating channel {channel.channel_id} ({channel.title}): {e}")
            await self.db.execute(
                'update_channel_active_status', channel_id=channel.channel_id, is_active=False, error_message=str(e))
            return "deactivated"
        except FeedFetchError as e:
            logger.error(f"Error fetching channel {channel.channel_id} ({channel.title}): {e}")
            return "errors"

        if not channel.is_active:
            logger.info(f"🔁 Reactivating channel {channel.channel_id} ({channel.title})")
            await self.db.execute('update_channel_active_status', channel_id=channel.channel_id, is_active=True)

        if candidate is None:
            return None
        return "new_items" if await self.ingest_candidate(channel, candidate) else None

    async def ingest_candidate(self, channel: Channel, candidate: Item) -> bool:
        """Create, resync or ignore a candidate item. Returns True when a new item was created."""
        if candidate.item_id == channel.cursor:
            logger.debug(f"No new item for channel {channel.channel_id} (latest: {candidate.item_id})")
            return False

        existing: Optional[Item] = await self.db.execute('get_item', item_id=candidate.item_id)
        if existing is not None:
            logger.info(f"↩️ Item {candidate.item_id} already known; resyncing cursor of {channel.channel_id}")
            await self.db.execute('update_channel_cursor', channel_id=channel.channel_id, cursor_value=candidate.item_id)
            channel.cursor = candidate.item_id
            if existing.processing_status == ProcessingStatus.PENDING:
                self.processing.enqueue([existing])
            return False

        created = await self.db.execute('create_item', item=candidate)
        await self.db.execute('update_channel_cursor', channel_id=channel.channel_id, cursor_value=candidate.item_id)
        channel.cursor = candidate.item_id
        if not created:
            return False
        logger.info(f"🆕 New item {candidate.item_id} on {channel.channel_id}: {candidate.title} ({candidate.kind.value})")
        self.processing.enqueue([candidate])
        return True

    async def reclassify_live_items(self) -> List[Item]:
        """Return live items whose broadcast has ended, updated to kind none."""
        live_items: List[Item] = await self.db.execute('list_live_items')
        ready: List[Item] = []
        for item in live_items:
            kind = await self.poller.oracle.classify(item.item_id)
            if kind != ItemKind.NONE:
                continue
            await self.db.execute('update_item_kind', item_id=item.item_id, kind=ItemKind.NONE.value)
            item.kind = ItemKind.NONE
            logger.info(f"📼 Live item {item.item_id} has ended; queueing for summary")
            if item.processing_status == ProcessingStatus.PENDING:
                ready.append(item)
        return ready

    async def add_channel(self, channel_id: str, title: str = "", user_id: Optional[int] = None) -> Dict[str, Any]:
        """Register a channel and subscription, backfilling recent items on first add."""
        created = await self.db.execute('register_channel', channel_id=channel_id, title=title)
        if user_id is not None:
            await self.db.execute('upsert_user', user_id=user_id)
            await self.db.execute('add_subscription', user_id=user_id, channel_id=channel_id)

        result: Dict[str, Any] = {"channel_id": channel_id, "created": created, "backfilled": 0}
        if not created or config.BACKFILL_ITEMS < 1:
            return result

        try:
            items = await self.poller.fetch_recent_items(channel_id, config.BACKFILL_ITEMS)
        except (FeedNotFoundError, FeedFetchError) as e:
            logger.warning(f"Backfill for {channel_id} failed: {e}")
            if isinstance(e, FeedNotFoundError):
                await self.db.execute(
                    'update_channel_active_status', channel_id=channel_id, is_active=False, error_message=str(e))
            return result

        new_items: List[Item] = []
        for item in items:
            if await self.db.execute('create_item', item=item):
                new_items.append(item)
        if items:
            await self.db.execute('update_channel_cursor', channel_id=channel_id, cursor_value=items[0].item_id)
        result["backfilled"] = self.processing.enqueue(new_items)
        logger.info(f"➕ Added channel {channel_id} with {len(new_items)} backfilled items")
        return result
