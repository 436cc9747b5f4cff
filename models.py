#!/usr/bin/env python3
"""
Database models and operations for the feed scraper.

This module contains the storage contract the scraper depends on
(``Storage``), the ``Feed`` and ``Post`` records it exchanges, and a SQLite
implementation built on a single-connection operation queue.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import DuplicateLinkError, StorageError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


@dataclass
class Feed:
    id: Any
    url: str
    name: str = ""
    user_id: str = "default"
    last_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Post:
    feed_id: Any
    title: str
    url: str
    published_at: datetime
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None


class Storage(ABC):
    """What the scraper needs from persistence.

    Implementations must be safe to call from many concurrent tasks.
    """

    @abstractmethod
    async def next_feeds_to_fetch(self, limit: int) -> List[Feed]:
        """Feeds never fetched first, then oldest ``last_fetched_at`` first."""

    @abstractmethod
    async def mark_fetched(self, feed_id: Any) -> None:
        """Set ``last_fetched_at`` to now; never moves it backwards."""

    @abstractmethod
    async def insert_post(self, post: Post) -> int:
        """Persist a post and return its id.

        Raises:
            DuplicateLinkError: a post with the same link already exists.
            StorageError: any other persistence failure.
        """

    @abstractmethod
    async def register_feed(self, url: str, name: str, user_id: str) -> Feed:
        """Create a feed, or return the existing one with the same URL."""

    @abstractmethod
    async def get_feed(self, feed_id: Any) -> Optional[Feed]:
        ...

    @abstractmethod
    async def list_feeds(self) -> List[Feed]:
        ...

    @abstractmethod
    async def list_posts(self, feed_id: Any = None, user_id: Optional[str] = None, limit: int = 10) -> List[Post]:
        """Newest posts first, optionally restricted to one feed or one owner."""

    @abstractmethod
    async def count_posts(self, feed_id: Any = None) -> int:
        ...


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


class DatabaseQueue:
    """A queue for database operations to ensure thread safety.

    All SQL runs on one connection owned by the worker task; callers submit
    operations by name through ``execute`` and get the result, or the
    original exception, back.
    """

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
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if not self.conn:
            self.running = False
            raise StorageError(f"Could not open database at {self.db_path}")
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

        # Wake any callers still waiting so they do not hang forever
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": StorageError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Could not initialize database {self.db_path}: {e}")
            if self.conn:
                self.conn.close()
            self.conn = None
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"_op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": StorageError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except DuplicateLinkError as e:
                    self.results[operation_id] = {"error": e}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    else:
                        # Caller is gone (cancelled); nobody will collect this result
                        self.results.pop(operation_id, None)
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
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
        """Execute a database operation."""
        if not self.running:
            raise StorageError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                error = result["error"]
                if isinstance(error, StorageError):
                    raise error
                raise StorageError(f"{operation_name} failed: {error}") from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Management Operations
    def _op_register_feed(self, url: str, name: str, user_id: str) -> Dict[str, Any]:
        """Register a feed; an existing row with the same URL is returned unchanged."""
        now = time()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (name, url, user_id, created_at, updated_at, last_fetched_at) "
                "VALUES (?, ?, ?, ?, ?, NULL)",
                (name, url, user_id, now, now)
            )
            self.conn.commit()
            cursor.execute("SELECT * FROM feeds WHERE url = ?", (url,))
            return dict(cursor.fetchone())
        finally:
            cursor.close()

    def _op_get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def _op_list_feeds(self) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds ORDER BY id")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _op_next_feeds_to_fetch(self, limit: int) -> List[Dict[str, Any]]:
        """Never-fetched feeds first, then the oldest last_fetched_at."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT * FROM feeds "
                "ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC, id ASC "
                "LIMIT ?",
                (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _op_mark_fetched(self, feed_id: int, fetched_at: float) -> bool:
        """Advance last_fetched_at; MAX() keeps it from ever going backwards."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_fetched_at = MAX(COALESCE(last_fetched_at, 0), ?), updated_at = ? "
                "WHERE id = ?",
                (fetched_at, fetched_at, feed_id)
            )
            self.conn.commit()
            if cursor.rowcount == 0:
                raise StorageError(f"Unknown feed ID {feed_id}")
            return True
        finally:
            cursor.close()

    # Post Operations
    def _op_insert_post(self, feed_id: int, title: str, url: str, description: Optional[str],
                        published_at: float, created_at: float) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO posts (feed_id, title, url, description, published_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (feed_id, title, url, description, published_at, created_at, created_at)
            )
            self.conn.commit()
            return cursor.lastrowid
        except IntegrityError as e:
            self.conn.rollback()
            if "UNIQUE" in str(e) and "posts.url" in str(e):
                raise DuplicateLinkError(url) from e
            raise StorageError(f"Could not insert post {url}: {e}") from e
        except Error as e:
            self.conn.rollback()
            raise StorageError(f"Could not insert post {url}: {e}") from e
        finally:
            cursor.close()

    def _op_list_posts(self, feed_id: Optional[int] = None, user_id: Optional[str] = None,
                       limit: int = 10) -> List[Dict[str, Any]]:
        query = "SELECT posts.* FROM posts JOIN feeds ON feeds.id = posts.feed_id"
        clauses = []
        args: List[Any] = []
        if feed_id is not None:
            clauses.append("posts.feed_id = ?")
            args.append(feed_id)
        if user_id is not None:
            clauses.append("feeds.user_id = ?")
            args.append(user_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY posts.published_at DESC, posts.id DESC LIMIT ?"
        args.append(limit)

        cursor = self.conn.cursor()
        try:
            cursor.execute(query, args)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _op_count_posts(self, feed_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM posts")
            else:
                cursor.execute("SELECT COUNT(*) FROM posts WHERE feed_id = ?", (feed_id,))
            return cursor.fetchone()[0]
        finally:
            cursor.close()


def _feed_from_row(row: Dict[str, Any]) -> Feed:
    return Feed(
        id=row['id'],
        url=row['url'],
        name=row['name'],
        user_id=row['user_id'],
        last_fetched_at=_from_epoch(row['last_fetched_at']),
        created_at=_from_epoch(row['created_at']),
    )


def _post_from_row(row: Dict[str, Any]) -> Post:
    return Post(
        id=row['id'],
        feed_id=row['feed_id'],
        title=row['title'],
        url=row['url'],
        description=row['description'],
        published_at=_from_epoch(row['published_at']),
        created_at=_from_epoch(row['created_at']),
    )


class SQLiteStorage(Storage):
    """``Storage`` backed by a SQLite file through ``DatabaseQueue``."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)

    async def start(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        await self.db.stop()

    async def __aenter__(self) -> "SQLiteStorage":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def next_feeds_to_fetch(self, limit: int) -> List[Feed]:
        rows = await self.db.execute('next_feeds_to_fetch', limit=limit)
        return [_feed_from_row(row) for row in rows]

    async def mark_fetched(self, feed_id: Any) -> None:
        await self.db.execute('mark_fetched', feed_id=feed_id, fetched_at=time())

    async def insert_post(self, post: Post) -> int:
        post_id = await self.db.execute(
            'insert_post',
            feed_id=post.feed_id,
            title=post.title,
            url=post.url,
            description=post.description,
            published_at=_to_epoch(post.published_at),
            created_at=_to_epoch(post.created_at),
        )
        post.id = post_id
        return post_id

    async def register_feed(self, url: str, name: str, user_id: str) -> Feed:
        row = await self.db.execute('register_feed', url=url, name=name, user_id=user_id)
        return _feed_from_row(row)

    async def get_feed(self, feed_id: Any) -> Optional[Feed]:
        row = await self.db.execute('get_feed', feed_id=feed_id)
        return _feed_from_row(row) if row else None

    async def list_feeds(self) -> List[Feed]:
        rows = await self.db.execute('list_feeds')
        return [_feed_from_row(row) for row in rows]

    async def list_posts(self, feed_id: Any = None, user_id: Optional[str] = None, limit: int = 10) -> List[Post]:
        rows = await self.db.execute('list_posts', feed_id=feed_id, user_id=user_id, limit=limit)
        return [_post_from_row(row) for row in rows]

    async def count_posts(self, feed_id: Any = None) -> int:
        return await self.db.execute('count_posts', feed_id=feed_id)
