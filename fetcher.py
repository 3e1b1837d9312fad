#!/usr/bin/env python3
"""
Channel feed poller and live-status oracle.

FeedPoller downloads a channel's Atom feed, parses it with feedparser, drops
short-form entries, asks the oracle whether each candidate is a live or
upcoming broadcast, and returns actionable items. A 404 raises
FeedNotFoundError so the caller can trip the channel's circuit breaker;
every other failure raises FeedFetchError.
"""

from asyncio import get_event_loop
from calendar import timegm
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError, FeedNotFoundError
from models import FeedEntry, Item, ItemKind, ProcessingStatus
from telemetry import trace_span
from utils import RetryHelper, clean_title

logger = get_logger("fetcher")

YOUTUBE_VIDEOS_API_URL = "https://www.googleapis.com/youtube/v3/videos"

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_FOUND = 404


class LiveStatusOracle:
    """Classifies an item as live, upcoming or a regular upload via the YouTube Data API.

    Without an API key, or when the API call fails, every item is treated as
    a regular upload.
    """

    def __init__(self, api_key: Optional[str] = None, session: Optional[ClientSession] = None):
        self.api_key = api_key if api_key is not None else config.YOUTUBE_API_KEY
        self.session = session

    async def classify(self, item_id: str) -> ItemKind:
        if not self.api_key:
            return ItemKind.NONE

        params = {"part": "snippet", "id": item_id, "key": self.api_key}
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)

        async def _execute(client: ClientSession) -> Dict[str, Any]:
            async with client.get(YOUTUBE_VIDEOS_API_URL, params=params, timeout=timeout) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

        try:
            if self.session is None:
                async with ClientSession(timeout=timeout) as owned_session:
                    data = await _execute(owned_session)
            else:
                data = await _execute(self.session)
        except (ClientError, TimeoutError, ValueError) as e:
            logger.warning(f"Live status lookup failed for {item_id}, assuming regular upload: {e}")
            return ItemKind.NONE

        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            return ItemKind.NONE
        content = (items[0].get("snippet") or {}).get("liveBroadcastContent")
        try:
            return ItemKind(content)
        except ValueError:
            return ItemKind.NONE


class FeedPoller:
    """Fetches channel feeds and picks out actionable items."""

    def __init__(self, oracle: Optional[LiveStatusOracle] = None, session: Optional[ClientSession] = None) -> None:
        self.session = session
        self.oracle = oracle or LiveStatusOracle(session=session)
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)
        self._owns_session = False

    async def initialize(self) -> None:
        if self.session is None:
            self.session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
            if self.oracle.session is None:
                self.oracle.session = self.session
        logger.info("FeedPoller initialized")

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            if self.oracle.session is self.session:
                self.oracle.session = None
        self.session = None
        self._owns_session = False

    async def _fetch_feed_content(self, channel_id: str, url: str) -> bytes:
        """Download the feed, retrying transport errors with backoff."""
        if self.session is None:
            await self.initialize()
        headers = {"User-Agent": config.USER_AGENT}
        last_error = "unknown error"
        for attempt in range(config.MAX_RETRIES + 1):
            try:
                async with self.session.get(url, headers=headers, timeout=ClientTimeout(total=config.HTTP_TIMEOUT)) as response:
                    if response.status == HTTP_NOT_FOUND:
                        raise FeedNotFoundError(channel_id, f"Feed not found (HTTP 404) for channel {channel_id}")
                    if response.status != HTTP_OK:
                        raise FeedFetchError(channel_id, f"HTTP {response.status} fetching feed for {channel_id}")
                    return await response.read()
            except TimeoutError:
                last_error = "Timed out"
            except ClientError as e:
                last_error = str(e) or type(e).__name__
            if attempt < config.MAX_RETRIES:
                logger.warning(f"Retry {attempt + 1}/{config.MAX_RETRIES} for channel {channel_id}: {last_error}")
                await self.retry_helper.sleep_for_attempt(attempt)
        raise FeedFetchError(channel_id, f"Failed to fetch feed for {channel_id} after {config.MAX_RETRIES} retries ({last_error})")

    def parse_entries(self, content: bytes) -> List[FeedEntry]:
        """Parse raw feed bytes into entries, preserving feed order."""
        feed = feedparser.parse(content)
        if feed.bozo and hasattr(feed, 'bozo_exception') and not feed.entries:
            logger.warning(f"Feed parsing warning: {feed.bozo_exception}")
        entries: List[FeedEntry] = []
        for entry in feed.entries:
            external_id = entry.get('yt_videoid') or entry.get('id')
            if not external_id:
                continue
            if external_id.startswith('yt:video:'):
                external_id = external_id[len('yt:video:'):]
            published = entry.get('published_parsed') or entry.get('updated_parsed')
            entries.append(FeedEntry(
                external_id=external_id,
                title=clean_title(entry.get('title')),
                published_at=timegm(published) if published else None,
                link=entry.get('link') or config.item_url(external_id),
            ))
        return entries

    def is_short_form(self, entry: FeedEntry) -> bool:
        return bool(config.SHORT_FORM_PATTERN) and config.SHORT_FORM_PATTERN in (entry.link or "")

    @trace_span(
        "fetcher.fetch_entries",
        tracer_name="fetcher",
        attr_from_args=lambda self, channel_id: {"channel.id": channel_id},
    )
    async def fetch_entries(self, channel_id: str) -> List[FeedEntry]:
        """Fetch and parse a channel feed.

        Raises:
            FeedNotFoundError: the feed answered 404.
            FeedFetchError: any other failure.
        """
        content = await self._fetch_feed_content(channel_id, config.feed_url(channel_id))
        try:
            return await get_event_loop().run_in_executor(None, self.parse_entries, content)
        except (ValueError, TypeError) as e:
            raise FeedFetchError(channel_id, f"Could not parse feed for {channel_id}: {e}") from e

    async def fetch_latest_item(self, channel_id: str) -> Optional[Item]:
        """Return the newest entry that is neither short-form nor an upcoming broadcast."""
        items = await self.fetch_recent_items(channel_id, 1)
        return items[0] if items else None

    async def fetch_recent_items(self, channel_id: str, limit: int) -> List[Item]:
        """Return up to ``limit`` actionable items, newest first."""
        if limit < 1:
            return []
        items: List[Item] = []
        for entry in await self.fetch_entries(channel_id):
            if self.is_short_form(entry):
                logger.debug(f"Skipping short-form entry {entry.external_id} ({entry.title})")
                continue
            kind = await self.oracle.classify(entry.external_id)
            if kind == ItemKind.UPCOMING:
                logger.debug(f"Skipping upcoming broadcast {entry.external_id} ({entry.title})")
                continue
            items.append(Item(
                item_id=entry.external_id,
                channel_id=channel_id,
                title=entry.title,
                published_at=entry.published_at,
                kind=kind,
                processing_status=ProcessingStatus.PENDING,
            ))
            if len(items) >= limit:
                break
        if not items:
            logger.info(f"No actionable entries in feed for channel {channel_id}")
        return items
