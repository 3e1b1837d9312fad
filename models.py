#!/usr/bin/env python3
"""
Data model and persistence for the Channel Summarizer.

Domain records (channels, items, delivery tokens, retry entries) are plain
dataclasses. Persistence goes through DatabaseQueue, which serializes every
SQLite operation through a single asyncio worker so coroutines never share a
cursor.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("models")


class ItemKind(str, Enum):
    """Broadcast classification reported by the oracle."""
    LIVE = "live"
    UPCOMING = "upcoming"
    NONE = "none"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Channel:
    channel_id: str
    title: str = ""
    is_active: bool = True
    last_error_message: Optional[str] = None
    last_error_at: Optional[int] = None
    cursor: Optional[str] = None


@dataclass
class Item:
    item_id: str
    channel_id: str
    title: str
    published_at: Optional[int] = None
    kind: ItemKind = ItemKind.NONE
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    retry_count: int = 0
    processed: bool = False
    summary: Optional[str] = None
    transcript: Optional[str] = None
    error_message: Optional[str] = None
    processing_started_at: Optional[int] = None
    processing_completed_at: Optional[int] = None


@dataclass
class FeedEntry:
    """One parsed entry of a channel feed, before classification."""
    external_id: str
    title: str
    published_at: Optional[int]
    link: str


@dataclass
class DeliveryToken:
    id: int
    user_id: int
    device_id: str
    token: str
    is_active: bool = True


@dataclass
class Subscriber:
    user_id: int
    slack_channel_id: Optional[str] = None
    tokens: List[DeliveryToken] = field(default_factory=list)


@dataclass
class RetryEntry:
    """A push that failed with a retryable error, keyed by (user_id, device_id)."""
    user_id: int
    device_id: str
    token: str
    payload: Dict[str, Any]
    attempt_count: int
    next_retry_at: float
    error_type: str
    last_error: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.user_id, self.device_id)


def _row_to_channel(row: Row) -> Channel:
    return Channel(
        channel_id=row["channel_id"],
        title=row["title"] or "",
        is_active=bool(row["is_active"]),
        last_error_message=row["last_error_message"],
        last_error_at=row["last_error_at"],
        cursor=row["cursor"],
    )


def _row_to_item(row: Row) -> Item:
    return Item(
        item_id=row["item_id"],
        channel_id=row["channel_id"],
        title=row["title"],
        published_at=row["published_at"],
        kind=ItemKind(row["kind"]),
        processing_status=ProcessingStatus(row["processing_status"]),
        retry_count=int(row["retry_count"]),
        processed=bool(row["processed"]),
        summary=row["summary"],
        transcript=row["transcript"],
        error_message=row["error_message"],
        processing_started_at=row["processing_started_at"],
        processing_completed_at=row["processing_completed_at"],
    )


def _row_to_token(row: Row) -> DeliveryToken:
    return DeliveryToken(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        token=row["token"],
        is_active=bool(row["is_active"]),
    )


def initialize_database(conn) -> None:
    """Create any missing tables from schema.sql."""
    cursor = conn.cursor()
    try:
        cursor.executescript(_read_schema_file())
        conn.commit()
        logger.debug("Database schema verified")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations so only one coroutine touches SQLite at a time."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait for the schema to be in place."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so nothing hangs on shutdown
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {"db.operation": operation_name},
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            RuntimeError: if the operation failed inside the worker.
        """
        if not self.running:
            raise RuntimeError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Channel operations
    def register_channel(self, channel_id: str, title: str = "") -> bool:
        """Insert a channel if it is new. Returns True when a row was created."""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO channels (channel_id, title, is_active, created_at) VALUES (?, ?, 1, ?)",
            (channel_id, title, int(time())),
        )
        created = cursor.rowcount > 0
        if not created and title:
            cursor.execute("UPDATE channels SET title = ? WHERE channel_id = ? AND title = ''", (title, channel_id))
        self.conn.commit()
        return created

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM channels WHERE channel_id = ?", (channel_id,))
        row = cursor.fetchone()
        return _row_to_channel(row) if row else None

    def list_channels(self) -> List[Channel]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM channels ORDER BY created_at, channel_id")
        return [_row_to_channel(row) for row in cursor.fetchall()]

    def update_channel_cursor(self, channel_id: str, cursor_value: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE channels SET cursor = ? WHERE channel_id = ?", (cursor_value, channel_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def update_channel_active_status(self, channel_id: str, is_active: bool, error_message: Optional[str] = None) -> bool:
        """Flip the channel's circuit breaker. Reactivation clears the recorded error."""
        cursor = self.conn.cursor()
        if is_active:
            cursor.execute(
                "UPDATE channels SET is_active = 1, last_error_message = NULL, last_error_at = NULL WHERE channel_id = ?",
                (channel_id,),
            )
        else:
            cursor.execute(
                "UPDATE channels SET is_active = 0, last_error_message = ?, last_error_at = ? WHERE channel_id = ?",
                (error_message, int(time()), channel_id),
            )
        self.conn.commit()
        return cursor.rowcount > 0

    # Users and subscriptions
    def upsert_user(self, user_id: int, username: Optional[str] = None, slack_channel_id: Optional[str] = None) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO users (id, username, slack_channel_id) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = COALESCE(excluded.username, users.username),
                slack_channel_id = COALESCE(excluded.slack_channel_id, users.slack_channel_id)
            """,
            (user_id, username, slack_channel_id),
        )
        self.conn.commit()
        return True

    def add_subscription(self, user_id: int, channel_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO subscriptions (user_id, channel_id, created_at) VALUES (?, ?, ?)",
            (user_id, channel_id, int(time())),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def list_subscribers(self, channel_id: str) -> List[Subscriber]:
        """Subscribers of a channel, each with their currently active delivery tokens."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT s.user_id, u.slack_channel_id
            FROM subscriptions s LEFT JOIN users u ON u.id = s.user_id
            WHERE s.channel_id = ?
            ORDER BY s.user_id
            """,
            (channel_id,),
        )
        subscribers = [Subscriber(user_id=row["user_id"], slack_channel_id=row["slack_channel_id"]) for row in cursor.fetchall()]
        for subscriber in subscribers:
            subscriber.tokens = self.get_active_tokens_for_user(subscriber.user_id)
        return subscribers

    # Delivery tokens
    def register_token(self, user_id: int, device_id: str, token: str) -> int:
        """Insert or refresh a device token; re-registration reactivates it."""
        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO delivery_tokens (user_id, device_id, token, is_active, created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            ON CONFLICT(user_id, device_id) DO UPDATE SET
                token = excluded.token, is_active = 1, updated_at = excluded.updated_at
            """,
            (user_id, device_id, token, now, now),
        )
        self.conn.commit()
        cursor.execute("SELECT id FROM delivery_tokens WHERE user_id = ? AND device_id = ?", (user_id, device_id))
        return cursor.fetchone()["id"]

    def get_active_tokens_for_user(self, user_id: int) -> List[DeliveryToken]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM delivery_tokens WHERE user_id = ? AND is_active = 1 ORDER BY id",
            (user_id,),
        )
        return [_row_to_token(row) for row in cursor.fetchall()]

    def deactivate_token(self, token_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE delivery_tokens SET is_active = 0, updated_at = ? WHERE id = ?",
            (int(time()), token_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_token(self, token_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM delivery_tokens WHERE id = ?", (token_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Item operations
    def get_item(self, item_id: str) -> Optional[Item]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM items WHERE item_id = ?", (item_id,))
        row = cursor.fetchone()
        return _row_to_item(row) if row else None

    def create_item(self, item: Item) -> bool:
        """Insert a new item. Returns False if the item id already exists."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT OR IGNORE INTO items
                (item_id, channel_id, title, published_at, kind, processing_status, retry_count, processed, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.item_id,
                item.channel_id,
                item.title,
                item.published_at,
                ItemKind(item.kind).value,
                ProcessingStatus(item.processing_status).value,
                item.retry_count,
                int(item.processed),
                int(time()),
            ),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def list_retry_eligible_items(self, max_retries: int) -> List[Item]:
        """Pending items of active channels with budget left, excluding live streams."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT i.* FROM items i JOIN channels c ON c.channel_id = i.channel_id
            WHERE i.processing_status = ? AND i.retry_count < ? AND i.kind = ? AND c.is_active = 1
            ORDER BY i.created_at, i.item_id
            """,
            (ProcessingStatus.PENDING.value, max_retries, ItemKind.NONE.value),
        )
        return [_row_to_item(row) for row in cursor.fetchall()]

    def list_live_items(self) -> List[Item]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT i.* FROM items i JOIN channels c ON c.channel_id = i.channel_id
            WHERE i.kind = ? AND c.is_active = 1
            ORDER BY i.created_at, i.item_id
            """,
            (ItemKind.LIVE.value,),
        )
        return [_row_to_item(row) for row in cursor.fetchall()]

    def update_item_kind(self, item_id: str, kind: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE items SET kind = ? WHERE item_id = ?", (ItemKind(kind).value, item_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def mark_item_processing(self, item_id: str, started_at: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE items SET processing_status = ?, processing_started_at = ? WHERE item_id = ?",
            (ProcessingStatus.PROCESSING.value, started_at, item_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def release_item(self, item_id: str) -> bool:
        """Return an interrupted item to pending without consuming retry budget."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE items SET processing_status = ?, processing_started_at = NULL WHERE item_id = ? AND processing_status = ?",
            (ProcessingStatus.PENDING.value, item_id, ProcessingStatus.PROCESSING.value),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def requeue_stale_items(self, started_before: int) -> int:
        """Move items stuck in processing since before ``started_before`` back to pending."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE items SET processing_status = ?, processing_started_at = NULL
            WHERE processing_status = ? AND (processing_started_at IS NULL OR processing_started_at < ?)
            """,
            (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value, started_before),
        )
        self.conn.commit()
        return cursor.rowcount

    def mark_item_completed(self, item_id: str, summary: str, transcript: str, completed_at: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE items SET processing_status = ?, processed = 1, summary = ?, transcript = ?,
                error_message = NULL, processing_completed_at = ?
            WHERE item_id = ?
            """,
            (ProcessingStatus.COMPLETED.value, summary, transcript, completed_at, item_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def mark_item_failed(self, item_id: str, retry_count: int, error_message: str, terminal: bool, completed_at: Optional[int] = None) -> bool:
        """Record a failed attempt: terminal failures close the item, others return it to pending."""
        status = ProcessingStatus.FAILED if terminal else ProcessingStatus.PENDING
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE items SET processing_status = ?, processed = ?, retry_count = ?, error_message = ?,
                processing_completed_at = ?
            WHERE item_id = ?
            """,
            (status.value, int(terminal), retry_count, error_message, completed_at if terminal else None, item_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def count_items_by_status(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT processing_status, COUNT(*) AS n FROM items GROUP BY processing_status")
        counts = {status.value: 0 for status in ProcessingStatus}
        for row in cursor.fetchall():
            counts[row["processing_status"]] = row["n"]
        return counts
