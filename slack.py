#!/usr/bin/env python3
"""
Slack delivery of item summaries.

Posts a summary message with Block Kit formatting to each subscriber's
Slack channel through chat.postMessage. Slack failures never affect item
state; they are logged per recipient.
"""

from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import DeliveryError
from models import DatabaseQueue
from utils import truncate_string

logger = get_logger("slack")

# Slack rejects section text above 3000 characters
MAX_SECTION_TEXT = 3000


def build_summary_blocks(channel_title: str, item_title: str, summary: str, url: str) -> List[Dict[str, Any]]:
    body = truncate_string(f"*{item_title}*\n\n{summary}", MAX_SECTION_TEXT)
    return [
        {"type": "header", "text": {"type": "plain_text", "text": "🎬 New video summary", "emoji": True}},
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": body},
            "accessory": {
                "type": "button",
                "text": {"type": "plain_text", "text": "Watch", "emoji": True},
                "url": url,
            },
        },
        {"type": "context", "elements": [{"type": "mrkdwn", "text": f"📺 {channel_title} · <{url}|Open video>"}]},
        {"type": "divider"},
    ]


class SlackNotifier:
    """Posts summaries to Slack channels with a bot token."""

    def __init__(self, db: DatabaseQueue, token: Optional[str] = None, session: Optional[ClientSession] = None):
        self.db = db
        self.token = token if token is not None else config.SLACK_BOT_TOKEN
        self.session = session

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    async def post_message(self, slack_channel: str, text: str, blocks: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Call chat.postMessage.

        Raises:
            DeliveryError: on transport failure or an ``ok: false`` response.
        """
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": config.USER_AGENT,
        }
        payload = {"channel": slack_channel, "text": text, "blocks": blocks, "unfurl_links": False}
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)

        async def _execute(client: ClientSession) -> Dict[str, Any]:
            async with client.post(config.SLACK_API_URL, json=payload, headers=headers, timeout=timeout) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
                if not isinstance(data, dict) or not data.get("ok"):
                    error = data.get("error") if isinstance(data, dict) else data
                    raise DeliveryError(f"Slack API error: {error}")
                return data

        try:
            if self.session is None:
                async with ClientSession(timeout=timeout) as owned_session:
                    return await _execute(owned_session)
            return await _execute(self.session)
        except ClientError as e:
            raise DeliveryError(f"Slack request failed: {e}") from e
        except TimeoutError as e:
            raise DeliveryError("Slack request timed out") from e
        except ValueError as e:
            raise DeliveryError(f"Invalid Slack response: {e}") from e

    async def notify_subscribers(self, channel_id: str, channel_title: str, item_title: str, summary: str, url: str) -> int:
        """Post the summary to every subscriber with a Slack channel. Returns the number of posts made."""
        if not self.enabled:
            return 0
        subscribers = await self.db.execute('list_subscribers', channel_id=channel_id)
        targets = sorted({s.slack_channel_id for s in subscribers if s.slack_channel_id})
        if not targets:
            return 0

        blocks = build_summary_blocks(channel_title, item_title, summary, url)
        text = f"🎬 {channel_title}: {item_title}"
        posted = 0
        for slack_channel in targets:
            try:
                await self.post_message(slack_channel, text, blocks)
                posted += 1
            except DeliveryError as e:
                logger.error(f"💬 Slack post to {slack_channel} failed: {e}")
        logger.info(f"💬 Posted summary to {posted}/{len(targets)} Slack channels for {channel_id}")
        return posted
