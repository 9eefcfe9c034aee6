#!/usr/bin/env python3
"""
Data models and database operations for the content library.

This module contains the dataclasses passed between pipeline stages, the
sqlite-backed DatabaseQueue, and the ContentStore / SubscriptionStore adapters
the pipeline talks to.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import PipelineError, StoreError
from telemetry import trace_span
from utils import from_timestamp, to_timestamp

logger = get_logger("models")


# Pipeline values

@dataclass
class FetchResult:
    """A successfully retrieved document."""
    url: str
    text: str
    content_type: str = ""
    status: int = 200


@dataclass
class ExtractedArticle:
    title: str
    body: str
    author: Optional[str] = None
    excerpt: Optional[str] = None
    publish_date: Optional[datetime] = None
    strategy: str = ""
    low_confidence: bool = False


@dataclass
class FeedItem:
    """One normalized feed entry.

    The body variants are kept apart so their precedence can be applied
    later: content_encoded, then content, then description.
    """
    title: str
    link: Optional[str] = None
    guid: Optional[str] = None
    content_encoded: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    publish_date: Optional[datetime] = None


@dataclass
class Source:
    url: str
    type: str = "rss"
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> "Source":
        if isinstance(data, str):
            return cls(url=data)
        return cls(
            url=str(data["url"]),
            type=str(data.get("type") or "rss").lower(),
            enabled=_as_bool(data.get("enabled", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "type": self.type, "enabled": self.enabled}


@dataclass
class Subscription:
    id: str
    name: str
    company: str = ""
    sources: List[Source] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    category_id: Optional[str] = None
    enabled: bool = True
    frequency: str = "daily"
    last_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        """Build a subscription from a database row dict or a YAML definition.

        Timestamps may be given as epoch seconds or datetimes; keywords as a
        list or a comma separated string.
        """
        keywords = data.get("keywords") or []
        if isinstance(keywords, str):
            keywords = [k.strip() for k in keywords.split(",")]
        name = data.get("name") or data["id"]
        return cls(
            id=str(data["id"]),
            name=str(name),
            company=str(data.get("company") or name),
            sources=[Source.from_dict(s) for s in data.get("sources") or []],
            keywords=[str(k) for k in keywords if str(k).strip()],
            category_id=data.get("category_id"),
            enabled=_as_bool(data.get("enabled", True)),
            frequency=str(data.get("frequency") or "daily").lower(),
            last_fetched_at=_as_datetime(data.get("last_fetched_at")),
            created_at=_as_datetime(data.get("created_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "company": self.company,
            "sources": [s.to_dict() for s in self.sources],
            "keywords": list(self.keywords),
            "category_id": self.category_id,
            "enabled": self.enabled,
            "frequency": self.frequency,
            "last_fetched_at": to_timestamp(self.last_fetched_at),
            "created_at": to_timestamp(self.created_at),
        }


@dataclass
class Content:
    title: str
    body: str
    type: str = "url"
    source_url: Optional[str] = None
    guid: Optional[str] = None
    author: Optional[str] = None
    publish_date: Optional[datetime] = None
    category_ids: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    key_points: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Content":
        return cls(
            id=row.get("id"),
            type=row.get("type") or "url",
            title=row["title"],
            body=row.get("body") or "",
            source_url=row.get("source_url"),
            guid=row.get("guid"),
            author=row.get("author"),
            publish_date=from_timestamp(row.get("publish_date")),
            category_ids=_json_list(row.get("category_ids")),
            tags=_json_list(row.get("tags")),
            summary=row.get("summary"),
            key_points=_json_list(row.get("key_points")) if row.get("key_points") else None,
            created_at=from_timestamp(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "source_url": self.source_url,
            "guid": self.guid,
            "author": self.author,
            "publish_date": to_timestamp(self.publish_date),
            "category_ids": json.dumps(self.category_ids, ensure_ascii=False),
            "tags": json.dumps(self.tags, ensure_ascii=False),
            "summary": self.summary,
            "key_points": json.dumps(self.key_points, ensure_ascii=False) if self.key_points else None,
            "created_at": to_timestamp(self.created_at) or int(time()),
        }


# Run results

@dataclass
class IngestStats:
    seen: int = 0
    created: int = 0
    duplicates: int = 0
    filtered: int = 0
    backfilled: int = 0
    backfill_failures: int = 0

    def merge(self, other: "IngestStats") -> None:
        self.seen += other.seen
        self.created += other.created
        self.duplicates += other.duplicates
        self.filtered += other.filtered
        self.backfilled += other.backfilled
        self.backfill_failures += other.backfill_failures


@dataclass
class IngestResult:
    created: List[Content] = field(default_factory=list)
    errors: List[PipelineError] = field(default_factory=list)
    stats: IngestStats = field(default_factory=IngestStats)


@dataclass
class SubscriptionRunResult:
    subscription_id: str
    success: bool
    new_item_count: int = 0
    error: Optional[str] = None
    source_errors: List[PipelineError] = field(default_factory=list)
    stats: IngestStats = field(default_factory=IngestStats)

    def as_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "newItems": self.new_item_count}
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class PassResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    new_item_count: int = 0
    results: List[SubscriptionRunResult] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.succeeded,
            "failed": self.failed,
            "newItems": self.new_item_count,
        }


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "off", "")
    return bool(value)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return from_timestamp(value)


def _json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Could not parse stored list value: {value!r}")
        return []
    return [str(v) for v in data] if isinstance(data, list) else []


# Database

def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='contents'")
        contents_table_exists = cursor.fetchone() is not None

        if not contents_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
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

    # Guard against pointing SCHEMA_FILE_PATH at something huge
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """Serializes all database operations through a single worker task.

    Operations are the plain methods below, addressed by name through
    ``execute``. A failing operation surfaces as ``StoreError``.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
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

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, ValueError, KeyError) as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
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
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Run a named operation on the worker and return its result."""
        if not self.running:
            raise StoreError(operation_name, "database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(operation_name, "database worker stopped before completing the operation")
            if "error" in result:
                raise StoreError(operation_name, result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Content operations
    def op_create_content(self, row: Dict[str, Any]) -> int:
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"INSERT INTO contents ({columns}) VALUES ({placeholders})", tuple(row.values()))
            self.conn.commit()
            return cursor.lastrowid
        finally:
            cursor.close()

    def op_list_contents(self) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM contents ORDER BY id")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def op_count_contents(self) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM contents")
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    # Subscription operations
    def op_save_subscription(self, subscription: Dict[str, Any]) -> bool:
        """Insert or replace a subscription together with its ordered sources.

        An existing ``last_fetched_at`` is kept when the incoming record has none.
        """
        with self.conn:
            cursor = self.conn.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO subscriptions
                        (id, name, company, keywords, category_id, enabled, frequency, last_fetched_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        company = excluded.company,
                        keywords = excluded.keywords,
                        category_id = excluded.category_id,
                        enabled = excluded.enabled,
                        frequency = excluded.frequency,
                        last_fetched_at = COALESCE(excluded.last_fetched_at, subscriptions.last_fetched_at)
                    """,
                    (
                        subscription["id"],
                        subscription["name"],
                        subscription.get("company") or "",
                        json.dumps(subscription.get("keywords") or [], ensure_ascii=False),
                        subscription.get("category_id"),
                        1 if subscription.get("enabled", True) else 0,
                        subscription.get("frequency") or "daily",
                        subscription.get("last_fetched_at"),
                        subscription.get("created_at") or int(time()),
                    ),
                )
                cursor.execute("DELETE FROM sources WHERE subscription_id = ?", (subscription["id"],))
                cursor.executemany(
                    "INSERT INTO sources (subscription_id, position, type, url, enabled) VALUES (?, ?, ?, ?, ?)",
                    [
                        (subscription["id"], position, src["type"], src["url"], 1 if src["enabled"] else 0)
                        for position, src in enumerate(subscription.get("sources") or [])
                    ],
                )
                return True
            finally:
                cursor.close()

    def op_get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query_subscriptions("WHERE id = ?", (subscription_id,))
        return rows[0] if rows else None

    def op_list_subscriptions(self, enabled_only: bool = False) -> List[Dict[str, Any]]:
        if enabled_only:
            return self._query_subscriptions("WHERE enabled = 1", ())
        return self._query_subscriptions("", ())

    def op_update_subscription(self, subscription_id: str, changes: Dict[str, Any]) -> bool:
        """Apply a partial update to a subscription row (not its sources)."""
        allowed = {"name", "company", "keywords", "category_id", "enabled", "frequency", "last_fetched_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {', '.join(sorted(unknown))}")
        if not changes:
            return False

        values = []
        for key, value in changes.items():
            if key == "keywords":
                value = json.dumps(value or [], ensure_ascii=False)
            elif key == "enabled":
                value = 1 if value else 0
            elif key == "last_fetched_at" and isinstance(value, datetime):
                value = to_timestamp(value)
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in changes)
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"UPDATE subscriptions SET {assignments} WHERE id = ?", (*values, subscription_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def _query_subscriptions(self, where: str, params: tuple) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT * FROM subscriptions {where} ORDER BY created_at, id", params)
            subscriptions = []
            for row in cursor.fetchall():
                data = dict(row)
                data["keywords"] = _json_list(data.get("keywords"))
                data["enabled"] = bool(data.get("enabled"))
                cursor2 = self.conn.cursor()
                cursor2.execute(
                    "SELECT type, url, enabled FROM sources WHERE subscription_id = ? ORDER BY position",
                    (data["id"],),
                )
                data["sources"] = [
                    {"type": s["type"], "url": s["url"], "enabled": bool(s["enabled"])}
                    for s in cursor2.fetchall()
                ]
                cursor2.close()
                subscriptions.append(data)
            return subscriptions
        finally:
            cursor.close()


class ContentStore:
    """Content persistence used by ingestion."""

    def __init__(self, db: DatabaseQueue):
        self.db = db

    async def get_all(self) -> List[Content]:
        rows = await self.db.execute("list_contents")
        return [Content.from_row(row) for row in rows]

    async def count(self) -> int:
        return await self.db.execute("count_contents")

    async def create(self, content: Content) -> int:
        """Persist a Content record and return its id (set on the record too)."""
        if content.created_at is None:
            content.created_at = from_timestamp(int(time()))
        content.id = await self.db.execute("create_content", row=content.to_row())
        return content.id


class SubscriptionStore:
    """Subscription persistence used by the scheduler and the CLI."""

    def __init__(self, db: DatabaseQueue):
        self.db = db

    async def get_enabled_subscriptions(self) -> List[Subscription]:
        rows = await self.db.execute("list_subscriptions", enabled_only=True)
        return [Subscription.from_dict(row) for row in rows]

    async def list_subscriptions(self) -> List[Subscription]:
        rows = await self.db.execute("list_subscriptions")
        return [Subscription.from_dict(row) for row in rows]

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        row = await self.db.execute("get_subscription", subscription_id=subscription_id)
        return Subscription.from_dict(row) if row else None

    async def save_subscription(self, subscription: Subscription) -> None:
        if subscription.created_at is None:
            subscription.created_at = from_timestamp(int(time()))
        await self.db.execute("save_subscription", subscription=subscription.to_dict())

    async def update_subscription(self, subscription_id: str, changes: Dict[str, Any]) -> bool:
        return await self.db.execute("update_subscription", subscription_id=subscription_id, changes=changes)
