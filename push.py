#!/usr/bin/env python3
"""
Push notification delivery.

ExpoPushClient talks to the Expo push API and returns one ticket per message.
NotificationDispatcher resolves a channel's subscribers and their active
tokens, sends in provider-sized batches, and routes every error ticket
through the error classifier.
"""

from typing import Any, Dict, List, Optional, Set

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import DeliveryError
from models import DatabaseQueue, DeliveryToken, Subscriber
from push_errors import ErrorAction, ErrorRule, NETWORK_ERROR, classify
from telemetry import trace_span
from utils import chunked, truncate_string

logger = get_logger("push")

MAX_BODY_LENGTH = 178


def build_push_message(token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Address a notification payload to one device token."""
    return {
        "to": token,
        "title": payload.get("title"),
        "body": payload.get("body"),
        "data": payload.get("data") or {},
        "sound": payload.get("sound") or "default",
        "badge": payload.get("badge"),
        "priority": "high",
    }


def ticket_error_code(ticket: Dict[str, Any]) -> Optional[str]:
    details = ticket.get("details") or {}
    return details.get("error") if isinstance(details, dict) else None


def _ticket_token(ticket: Dict[str, Any]) -> Optional[str]:
    details = ticket.get("details") or {}
    return details.get("expoPushToken") if isinstance(details, dict) else None


async def apply_token_action(db: DatabaseQueue, token: DeliveryToken, rule: ErrorRule) -> None:
    """Delete or deactivate a token according to its error rule."""
    try:
        if rule.action == ErrorAction.DELETE_TOKEN:
            await db.execute('delete_token', token_id=token.id)
            logger.info(f"🗑️ Deleted token for user {token.user_id} device {token.device_id} ({rule.error_type})")
        elif rule.action == ErrorAction.DEACTIVATE_TOKEN:
            await db.execute('deactivate_token', token_id=token.id)
            logger.info(f"🔕 Deactivated token for user {token.user_id} device {token.device_id} ({rule.error_type})")
    except RuntimeError as e:
        logger.error(f"Failed to update token {token.id}: {e}")


class ExpoPushClient:
    """Minimal async client for the Expo push send endpoint."""

    def __init__(self, session: Optional[ClientSession] = None):
        self.session = session
        self._owns_session = False

    async def initialize(self) -> None:
        if self.session is None:
            self.session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
        self.session = None
        self._owns_session = False

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
            "User-Agent": config.USER_AGENT,
        }
        if config.EXPO_ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {config.EXPO_ACCESS_TOKEN}"
        return headers

    async def send(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Send one batch and return the provider's tickets.

        Raises:
            DeliveryError: on transport failure or a request-level error response.
        """
        if not messages:
            return []

        async def _execute(client: ClientSession) -> List[Dict[str, Any]]:
            async with client.post(config.PUSH_API_URL, json=messages, headers=self._headers()) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400 or (isinstance(data, dict) and data.get("errors")):
                    errors = data.get("errors") if isinstance(data, dict) else data
                    raise DeliveryError(f"Push API returned HTTP {resp.status}: {errors}")
                tickets = data.get("data") if isinstance(data, dict) else None
                if not isinstance(tickets, list):
                    raise DeliveryError(f"Unexpected push API response: {type(tickets)}")
                return tickets

        try:
            if self.session is None:
                async with ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT)) as owned_session:
                    return await _execute(owned_session)
            return await _execute(self.session)
        except ClientError as e:
            raise DeliveryError(f"Push API request failed: {e}") from e
        except TimeoutError as e:
            raise DeliveryError("Push API request timed out") from e
        except ValueError as e:
            raise DeliveryError(f"Invalid push API response: {e}") from e


class NotificationDispatcher:
    """Fan a notification out to every active device of a channel's subscribers."""

    def __init__(self, db: DatabaseQueue, transport: ExpoPushClient, retry_queue=None):
        self.db = db
        self.transport = transport
        self.retry_queue = retry_queue

    @staticmethod
    def build_payload(channel_id: str, channel_title: str, item_id: str, item_title: str) -> Dict[str, Any]:
        return {
            "title": f"📺 {channel_title or channel_id}",
            "body": truncate_string(f"New video: {item_title}", MAX_BODY_LENGTH),
            "data": {
                "type": "new_video_summary",
                "videoId": item_id,
                "channelId": channel_id,
                "channelName": channel_title,
            },
            "sound": "default",
            "badge": 1,
        }

    @trace_span(
        "push.notify",
        tracer_name="push",
        attr_from_args=lambda self, channel_id, message: {"channel.id": channel_id},
    )
    async def notify(self, channel_id: str, message: Dict[str, Any]) -> int:
        """Send ``message`` to all subscribers of a channel. Returns how many users were reached."""
        subscribers: List[Subscriber] = await self.db.execute('list_subscribers', channel_id=channel_id)
        if not subscribers:
            logger.info(f"🔔 No subscribers for channel {channel_id}")
            return 0

        tokens = [token for subscriber in subscribers for token in subscriber.tokens]
        if not tokens:
            logger.info(f"🔔 No active tokens among {len(subscribers)} subscribers of {channel_id}")
            return 0

        reached = await self._deliver(tokens, message)
        logger.info(f"🔔 Notified {len(reached)}/{len(subscribers)} users for channel {channel_id}")
        return len(reached)

    async def send_to_user(self, user_id: int, message: Dict[str, Any]) -> bool:
        """Send ``message`` to every active device of one user."""
        tokens: List[DeliveryToken] = await self.db.execute('get_active_tokens_for_user', user_id=user_id)
        if not tokens:
            logger.warning(f"🔔 No active tokens for user {user_id}")
            return False
        reached = await self._deliver(tokens, message)
        return user_id in reached

    async def _deliver(self, tokens: List[DeliveryToken], payload: Dict[str, Any]) -> Set[int]:
        reached: Set[int] = set()
        for batch in chunked(tokens, config.PUSH_BATCH_SIZE):
            messages = [build_push_message(token.token, payload) for token in batch]
            try:
                tickets = await self.transport.send(messages)
            except DeliveryError as e:
                logger.error(f"❌ Push batch of {len(batch)} failed: {e}")
                for token in batch:
                    self._hand_off(token, payload, NETWORK_ERROR, str(e))
                continue
            await self._process_tickets(batch, tickets, payload, reached)
        return reached

    async def _process_tickets(self, batch: List[DeliveryToken], tickets: List[Dict[str, Any]],
                               payload: Dict[str, Any], reached: Set[int]) -> None:
        aligned = len(tickets) == len(batch)
        if not aligned:
            logger.warning(f"⚠️ Got {len(tickets)} tickets for {len(batch)} messages; success cannot be attributed")
        by_token = {token.token: token for token in batch}

        for index, ticket in enumerate(tickets):
            status = ticket.get("status")
            token = by_token.get(_ticket_token(ticket)) or (batch[index] if aligned else None)
            if status == "ok":
                if aligned:
                    reached.add(batch[index].user_id)
                continue
            if token is None:
                logger.warning(f"⚠️ Unattributable push error: {ticket.get('message')}")
                continue
            await self._handle_error(token, ticket, payload)

    async def _handle_error(self, token: DeliveryToken, ticket: Dict[str, Any], payload: Dict[str, Any]) -> None:
        code = ticket_error_code(ticket)
        rule = classify(code)
        logger.warning(
            f"❌ Push error for user {token.user_id} device {token.device_id}: "
            f"{rule.error_type} ({rule.severity.value}, {rule.action.value}) {ticket.get('message') or ''}"
        )
        if rule.action in (ErrorAction.DELETE_TOKEN, ErrorAction.DEACTIVATE_TOKEN):
            await apply_token_action(self.db, token, rule)
            if self.retry_queue is not None:
                self.retry_queue.remove(token.user_id, token.device_id)
        elif rule.hands_off_to_retry_queue:
            self._hand_off(token, payload, code, ticket.get("message"))

    def _hand_off(self, token: DeliveryToken, payload: Dict[str, Any], code: Optional[str], message: Optional[str]) -> None:
        if self.retry_queue is None:
            return
        self.retry_queue.enqueue(token.user_id, token.device_id, token.token, payload, code, message)
