#!/usr/bin/env python3
"""
Bounded-concurrency processing queue for discovered items.

Items are appended in FIFO order and drained in fixed-size batches. A batch
waits for all of its items to settle; one item's exception never aborts its
siblings. Only one drain runs at a time: items enqueued while a drain is in
progress are picked up by that drain.
"""

from asyncio import gather
from collections import deque
from typing import Deque, Iterable, List, Optional, Set

from config import config, get_logger
from models import Item, ItemKind
from telemetry import trace_span

logger = get_logger("processing")


class ProcessingScheduler:
    """FIFO work queue feeding the summarization worker."""

    def __init__(self, worker, batch_size: Optional[int] = None):
        self.worker = worker
        self.batch_size = batch_size or config.PROCESSING_CONCURRENCY
        self.queue: Deque[Item] = deque()
        self._pending_ids: Set[str] = set()
        self.is_draining = False

    def __len__(self) -> int:
        return len(self.queue)

    def enqueue(self, items: Iterable[Item]) -> int:
        """Append items to the queue. Live items and items already queued are skipped."""
        added = 0
        for item in items:
            if item.kind == ItemKind.LIVE:
                logger.debug(f"Not queueing live item {item.item_id}")
                continue
            if item.item_id in self._pending_ids:
                continue
            self.queue.append(item)
            self._pending_ids.add(item.item_id)
            added += 1
        if added:
            logger.info(f"📥 Queued {added} items ({len(self.queue)} waiting)")
        return added

    @trace_span("processing.drain", tracer_name="processing")
    async def drain(self) -> int:
        """Process queued items batch by batch until the queue is empty.

        Returns the number of items processed, or 0 if another drain is running.
        """
        if self.is_draining:
            logger.debug("Drain already in progress; new items will be picked up by it")
            return 0

        self.is_draining = True
        processed = 0
        try:
            while self.queue:
                batch: List[Item] = [self.queue.popleft() for _ in range(min(self.batch_size, len(self.queue)))]
                logger.info(f"⚙️ Processing batch of {len(batch)} items ({len(self.queue)} remaining)")
                results = await gather(*(self.worker.process_item(item) for item in batch), return_exceptions=True)
                for item, result in zip(batch, results):
                    self._pending_ids.discard(item.item_id)
                    if isinstance(result, Exception):
                        logger.error(f"Processing of {item.item_id} raised: {result}")
                processed += len(batch)
        finally:
            self.is_draining = False
        return processed
