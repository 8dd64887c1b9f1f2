#!/usr/bin/env python3
"""
Database models and operations for the feed synchronization engine.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any

# Import config for unified logging
from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

# Stay well below SQLite's host parameter limit for IN (...) lookups
IN_CLAUSE_CHUNK = 500


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
            logger.debug("Database already exists with proper schema")

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


def _chunks(values: List[Any], size: int = IN_CLAUSE_CHUNK):
    for start in range(0, len(values), size):
        yield values[start:start + size]


class DatabaseQueue:
    """A queue for database operations so one connection serves every task."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

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

        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if callable(method) and not operation_name.startswith('_'):
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
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
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result.

        Raises:
            StoreError: if the operation failed or the worker was stopped.
        """
        operation_id = str(uuid4())

        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(f"Database worker stopped before {operation_name} completed")
            if "error" in result:
                raise StoreError(result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Folder Operations
    def get_or_create_folder(self, name: str) -> int:
        """Return the id of the folder called name, creating it if needed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("INSERT OR IGNORE INTO folders (name) VALUES (?)", (name,))
            cursor.execute("SELECT id FROM folders WHERE name = ?", (name,))
            folder_id = cursor.fetchone()['id']
            self.conn.commit()
            return folder_id
        finally:
            cursor.close()

    # Feed Management Operations
    def register_feed(self, url: str, title: str = "", website: str = "", folder_id: Optional[int] = None) -> int:
        """Ensure a feed row exists for url and return its id (existing rows are left untouched)."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (url, title, website, folder_id, last_fetched) VALUES (?, ?, ?, ?, 0)",
                (url, title, website or url, folder_id)
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            return cursor.fetchone()['id']
        finally:
            cursor.close()

    def add_feed(self, url: str, title: str, website: str, folder_id: Optional[int] = None) -> int:
        """Insert a new feed. Raises on a duplicate url."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO feeds (url, title, website, folder_id, last_fetched) VALUES (?, ?, ?, ?, 0)",
                (url, title, website, folder_id)
            )
            self.conn.commit()
            return cursor.lastrowid
        except IntegrityError:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds ordered by id."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM feeds ORDER BY id")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def update_feed_success(self, feed_id: int, title: str) -> bool:
        """Record a successful fetch: title, last_fetched now, error cleared."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE feeds SET title = ?, last_fetched = ?, error = NULL WHERE id = ?",
                (title, int(time()), feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating feed ID {feed_id} after fetch: {e}")
            raise

    def update_feed_error(self, feed_id: int, error: str) -> bool:
        """Store the last fetch error for a feed."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET error = ? WHERE id = ?", (error, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating feed error for feed ID {feed_id}: {e}")
            return False

    # Article Operations
    def check_existing_guids(self, feed_id: int, guids: List[str]) -> Set[str]:
        """Return the subset of guids already stored for this feed."""
        existing: Set[str] = set()
        unique = list(dict.fromkeys(guids))
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(unique):
                placeholders = ','.join(['?' for _ in chunk])
                cursor.execute(
                    f"SELECT guid FROM articles WHERE feed_id = ? AND guid IN ({placeholders})",
                    [feed_id] + chunk
                )
                existing.update(row[0] for row in cursor.fetchall())
            return existing
        finally:
            cursor.close()

    def get_articles_by_guids(self, feed_id: int, guids: List[str]) -> List[Dict[str, Any]]:
        """Identity and link columns of stored articles matching guids."""
        rows: List[Dict[str, Any]] = []
        unique = list(dict.fromkeys(guids))
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(unique):
                placeholders = ','.join(['?' for _ in chunk])
                cursor.execute(
                    f"SELECT id, guid, title, link FROM articles WHERE feed_id = ? AND guid IN ({placeholders})",
                    [feed_id] + chunk
                )
                rows.extend(dict(row) for row in cursor.fetchall())
            return rows
        finally:
            cursor.close()

    def get_articles_missing_link(self, feed_id: int) -> List[Dict[str, Any]]:
        """Stored articles of a feed whose link is empty or blank."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id, guid, title, link FROM articles WHERE feed_id = ? AND TRIM(link) = '' ORDER BY id",
                (feed_id,)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def apply_feed_sync(self, feed_id: int, link_backfills: List[Dict[str, Any]], articles: List[Dict[str, Any]]) -> Dict[str, int]:
        """Write link backfills and insert new articles in one transaction.

        Either every change for this feed lands or none does.
        """
        backfilled = 0
        inserted = 0
        cursor = self.conn.cursor()
        try:
            for update in link_backfills:
                if update.get('article_id') is not None:
                    cursor.execute(
                        "UPDATE articles SET link = ? WHERE id = ? AND feed_id = ?",
                        (update['link'], update['article_id'], feed_id)
                    )
                else:
                    cursor.execute(
                        "UPDATE articles SET link = ? WHERE feed_id = ? AND guid = ?",
                        (update['link'], feed_id, update['guid'])
                    )
                backfilled += cursor.rowcount

            for article in articles:
                cursor.execute(
                    '''
                    INSERT OR IGNORE INTO articles
                        (feed_id, guid, title, link, content, snippet, author, published, received, read, starred, words)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        feed_id,
                        article['guid'],
                        article['title'],
                        article['link'],
                        article['content'],
                        article['snippet'],
                        article.get('author'),
                        article['published'],
                        article['received'],
                        article.get('read', 0),
                        article.get('starred', 0),
                        json.dumps(article.get('words') or []),
                    )
                )
                inserted += cursor.rowcount
            self.conn.commit()
            return {"inserted": inserted, "backfilled": backfilled}
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Error applying sync for feed ID {feed_id}, rolled back: {e}")
            raise
        finally:
            cursor.close()

    def list_articles(self, feed_id: int) -> List[Dict[str, Any]]:
        """All articles of a feed, newest insert first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM articles WHERE feed_id = ? ORDER BY id DESC", (feed_id,))
            rows = []
            for row in cursor.fetchall():
                record = dict(row)
                record['words'] = json.loads(record.get('words') or '[]')
                rows.append(record)
            return rows
        finally:
            cursor.close()

    def count_articles(self, feed_id: Optional[int] = None, read: Optional[int] = None) -> int:
        """Count articles, optionally filtered by feed and read flag."""
        clauses = []
        params: List[Any] = []
        if feed_id is not None:
            clauses.append("feed_id = ?")
            params.append(feed_id)
        if read is not None:
            clauses.append("read = ?")
            params.append(read)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT COUNT(*) FROM articles{where}", params)
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def mark_articles_read(self, feed_id: Optional[int] = None) -> int:
        """Mark every article (or every article of one feed) as read."""
        try:
            cursor = self.conn.cursor()
            if feed_id is None:
                cursor.execute("UPDATE articles SET read = 1 WHERE read = 0")
            else:
                cursor.execute("UPDATE articles SET read = 1 WHERE feed_id = ? AND read = 0", (feed_id,))
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error marking articles as read: {e}")
            raise
