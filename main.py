#!/usr/bin/env python3
"""
Channel Summarizer entry point.

Wires the pipeline together (store, feed poller, summarization worker,
processing queue, push dispatcher with its retry queue, Slack notifier) and
exposes it through a small CLI:

    run          one poll cycle, then exit
    monitor      poll and retry timers until interrupted
    status       item counts, channel health and retry queue state
    add-channel  register a channel for a user and backfill recent items
    seed         load channels and subscriptions from channels.yaml
    test-push    send a test notification to one user's devices
"""

import asyncio
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import argparse

from aiohttp import ClientSession, ClientTimeout

from config import config, get_logger
from fetcher import FeedPoller, LiveStatusOracle
from models import DatabaseQueue
from monitor import ChannelMonitor
from processing import ProcessingScheduler
from push import ExpoPushClient, NotificationDispatcher
from retry_queue import PushRetryQueue
from scheduler import IntervalScheduler
from slack import SlackNotifier
from summarizer import SummarizationWorker, SummaryService, TranscriptClient
from telemetry import init_telemetry, trace_span

logger = get_logger("main")


class ChannelSummarizerApp:
    """Builds the pipeline components and owns their lifecycle."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.db: Optional[DatabaseQueue] = None
        self.session: Optional[ClientSession] = None
        self.monitor: Optional[ChannelMonitor] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.retry_queue: Optional[PushRetryQueue] = None

    async def initialize(self) -> None:
        self.db = DatabaseQueue(self.db_path)
        await self.db.start()
        self.session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))

        transport = ExpoPushClient(session=self.session)
        self.retry_queue = PushRetryQueue(self.db, transport)
        self.dispatcher = NotificationDispatcher(self.db, transport, retry_queue=self.retry_queue)
        slack = SlackNotifier(self.db, session=self.session)

        oracle = LiveStatusOracle(session=self.session)
        poller = FeedPoller(oracle=oracle, session=self.session)
        service = SummaryService(TranscriptClient(session=self.session))
        worker = SummarizationWorker(self.db, service, dispatcher=self.dispatcher, slack=slack if slack.enabled else None)
        processing = ProcessingScheduler(worker)
        self.monitor = ChannelMonitor(self.db, poller, processing, retry_queue=self.retry_queue, scheduler=IntervalScheduler())
        logger.info(f"Initialized with configuration: {config.get_config_summary()}")

    async def close(self) -> None:
        if self.monitor:
            self.monitor.stop()
        if self.session:
            await self.session.close()
            self.session = None
        if self.db:
            await self.db.stop()

    @trace_span("main.run_once", tracer_name="main")
    async def run_once(self) -> bool:
        start_time = time.time()
        stats = await self.monitor.run_cycle()
        await self.retry_queue.process_ready()
        logger.info(f"🎉 Run completed in {time.time() - start_time:.1f}s ({stats['processed']} items processed)")
        return True

    async def run_forever(self) -> None:
        await self.monitor.start(run_immediately=True)
        try:
            await asyncio.Event().wait()
        finally:
            self.monitor.stop()

    async def seed(self) -> int:
        seeds = config.load_channel_seeds()
        for seed in seeds:
            await self.db.execute('register_channel', channel_id=seed['channel_id'], title=seed['title'])
            for user_id in seed['subscribers']:
                await self.db.execute('upsert_user', user_id=user_id)
                await self.db.execute('add_subscription', user_id=user_id, channel_id=seed['channel_id'])
        logger.info(f"🌱 Seeded {len(seeds)} channels")
        return len(seeds)

    async def check_status(self) -> Dict[str, Any]:
        channels = await self.db.execute('list_channels')
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'items': await self.db.execute('count_items_by_status'),
            'channels': {
                'total': len(channels),
                'active': sum(1 for c in channels if c.is_active),
                'inactive': [
                    {'channel_id': c.channel_id, 'title': c.title, 'error': c.last_error_message}
                    for c in channels if not c.is_active
                ],
            },
            'retry_queue': self.retry_queue.status(),
        }


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print("\n📊 Channel Summarizer Status")
    print(f"⏰ {status['timestamp']}")
    items = status['items']
    print("\n💾 Items:")
    for state, count in items.items():
        print(f"   {state}: {count}")
    channels = status['channels']
    print(f"\n📺 Channels: {channels['active']}/{channels['total']} active")
    for channel in channels['inactive']:
        print(f"   🚫 {channel['channel_id']} ({channel['title']}): {channel['error']}")
    queue = status['retry_queue']
    print(f"\n🔄 Push retries (this process): {queue['total_queued']} queued, {queue['ready_for_retry']} ready")


async def run_mode(args: argparse.Namespace) -> bool:
    app = ChannelSummarizerApp()
    await app.initialize()
    try:
        if args.mode == 'run':
            return await app.run_once()
        if args.mode == 'monitor':
            await app.run_forever()
            return True
        if args.mode == 'status':
            print_status(await app.check_status())
            return True
        if args.mode == 'add-channel':
            if not args.channel_id:
                logger.error("add-channel requires a channel id")
                return False
            result = await app.monitor.add_channel(args.channel_id, title=args.title or "", user_id=args.user)
            await app.monitor.processing.drain()
            logger.info(f"➕ {result}")
            return True
        if args.mode == 'seed':
            return await app.seed() > 0
        if args.mode == 'test-push':
            if args.user is None:
                logger.error("test-push requires --user")
                return False
            payload = NotificationDispatcher.build_payload("test", "Channel Summarizer", "test", "Test notification")
            payload['data']['type'] = 'test'
            return await app.dispatcher.send_to_user(args.user, payload)
        return False
    finally:
        await app.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Channel Summarizer')
    parser.add_argument('mode', choices=['run', 'monitor', 'status', 'add-channel', 'seed', 'test-push'],
                        help='Operation mode')
    parser.add_argument('channel_id', nargs='?', help='Channel id (add-channel mode)')
    parser.add_argument('--user', type=int, help='User id for add-channel and test-push')
    parser.add_argument('--title', type=str, help='Channel title for add-channel')
    args = parser.parse_args()

    init_telemetry("channel-summarizer")
    try:
        success = asyncio.run(run_mode(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Channel Summarizer shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
