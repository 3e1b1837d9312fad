#!/usr/bin/env python3
"""
In-memory retry queue for failed push deliveries.

Entries are keyed by (user_id, device_id), so a device only ever has one
pending retry. Ready entries are re-sent one message at a time by
``process_ready``; ``cleanup_old_entries`` purges entries a stalled scan
never got to. Nothing here is persisted: a restart drops pending retries.
"""

from time import time
from typing import Any, Callable, Dict, Optional, Tuple

from config import config, get_logger
from errors import DeliveryError
from models import DatabaseQueue, RetryEntry
from push import ExpoPushClient, apply_token_action, build_push_message, ticket_error_code
from push_errors import ErrorAction, classify
from telemetry import trace_span
from utils import backoff_delay_ms

logger = get_logger("retry_queue")


class PushRetryQueue:
    """Backoff store for push messages that failed with a retryable error."""

    def __init__(self, db: DatabaseQueue, transport: ExpoPushClient, clock: Callable[[], float] = time):
        self.db = db
        self.transport = transport
        self.clock = clock
        self.entries: Dict[Tuple[int, str], RetryEntry] = {}
        self.is_processing = False

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, user_id: int, device_id: str) -> Optional[RetryEntry]:
        return self.entries.get((user_id, device_id))

    def enqueue(self, user_id: int, device_id: str, token: str, payload: Dict[str, Any],
                error_code: Optional[str], last_error: Optional[str] = None) -> bool:
        """Schedule a retry, or drop the key once its attempts are exhausted.

        Returns True when an entry was (re)scheduled.
        """
        rule = classify(error_code)
        key = (user_id, device_id)
        existing = self.entries.get(key)
        attempt_count = existing.attempt_count + 1 if existing else 1

        if attempt_count > rule.max_retries:
            self.entries.pop(key, None)
            logger.warning(f"🔄 Max retries exceeded for {user_id}:{device_id} ({rule.error_type}), dropping")
            return False

        delay_ms = backoff_delay_ms(rule.backoff_base_ms, attempt_count)
        entry = RetryEntry(
            user_id=user_id,
            device_id=device_id,
            token=token,
            payload=payload,
            attempt_count=attempt_count,
            next_retry_at=self.clock() + delay_ms / 1000.0,
            error_type=rule.error_type,
            last_error=last_error,
        )
        self.entries[key] = entry
        logger.info(f"🔄 Queued retry for {user_id}:{device_id} (attempt {attempt_count}, in {delay_ms / 1000.0:.0f}s)")
        return True

    def remove(self, user_id: int, device_id: str) -> None:
        if self.entries.pop((user_id, device_id), None) is not None:
            logger.debug(f"🔄 Removed {user_id}:{device_id} from retry queue")

    @trace_span("retry.process_ready", tracer_name="retry")
    async def process_ready(self) -> int:
        """Re-send every entry whose retry time has come. Returns the number attempted."""
        if self.is_processing or not self.entries:
            return 0

        self.is_processing = True
        try:
            now = self.clock()
            ready = [entry for entry in self.entries.values() if entry.next_retry_at <= now]
            if not ready:
                return 0
            logger.info(f"🔄 Processing {len(ready)} push retries")
            for entry in ready:
                await self._retry(entry)
            return len(ready)
        finally:
            self.is_processing = False

    def _superseded(self, entry: RetryEntry) -> bool:
        """True when a newer entry for the same device was queued while this one was in flight."""
        return self.entries.get((entry.user_id, entry.device_id)) is not entry

    async def _retry(self, entry: RetryEntry) -> None:
        key = f"{entry.user_id}:{entry.device_id}"
        try:
            tokens = await self.db.execute('get_active_tokens_for_user', user_id=entry.user_id)
        except RuntimeError as e:
            logger.error(f"🔄 Could not load tokens for {key}: {e}")
            return

        current = next((t for t in tokens if t.device_id == entry.device_id), None)
        if current is None:
            logger.info(f"🔄 Token for {key} no longer active, dropping retry")
            self.remove(entry.user_id, entry.device_id)
            return

        try:
            tickets = await self.transport.send([build_push_message(current.token, entry.payload)])
        except DeliveryError as e:
            logger.warning(f"🔄 Retry send failed for {key}: {e}")
            if self._superseded(entry):
                return
            self.enqueue(entry.user_id, entry.device_id, current.token, entry.payload, entry.error_type, str(e))
            return

        ticket = tickets[0] if tickets else {"status": "error", "message": "No ticket returned"}
        if ticket.get("status") == "ok":
            logger.info(f"✅ Retry delivered for {key}")
            if not self._superseded(entry):
                self.remove(entry.user_id, entry.device_id)
            return

        code = ticket_error_code(ticket)
        rule = classify(code)
        if rule.action in (ErrorAction.DELETE_TOKEN, ErrorAction.DEACTIVATE_TOKEN):
            await apply_token_action(self.db, current, rule)
            self.remove(entry.user_id, entry.device_id)
            return
        if self._superseded(entry):
            return
        self.enqueue(entry.user_id, entry.device_id, current.token, entry.payload,
                     code, ticket.get("message") or "Retry failed")

    def cleanup_old_entries(self, max_age_seconds: Optional[float] = None) -> int:
        """Purge entries whose retry time is older than the cutoff."""
        if max_age_seconds is None:
            max_age_seconds = config.RETRY_ENTRY_MAX_AGE_HOURS * 3600
        cutoff = self.clock() - max_age_seconds
        stale = [key for key, entry in self.entries.items() if entry.next_retry_at < cutoff]
        for key in stale:
            del self.entries[key]
        if stale:
            logger.info(f"🧹 Cleaned up {len(stale)} stale retry entries")
        return len(stale)

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        by_error_type: Dict[str, int] = {}
        ready = 0
        for entry in self.entries.values():
            if entry.next_retry_at <= now:
                ready += 1
            by_error_type[entry.error_type] = by_error_type.get(entry.error_type, 0) + 1
        return {
            "total_queued": len(self.entries),
            "ready_for_retry": ready,
            "by_error_type": by_error_type,
        }
