"""
Database connection and query utilities

Provides connection pooling and helper methods for database operations.
Only the PostgreSQL record store uses this module; the in-memory backend
never opens a connection.
"""

import psycopg2
from psycopg2.pool import ThreadedConnectionPool
from psycopg2.extras import RealDictCursor
from typing import Optional, Any, Tuple
from contextlib import contextmanager
import logging
import threading

from dispatch.utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager with connection pooling"""

    def __init__(self, config: Optional[Settings] = None):
        """Initialize database connection pool"""
        self.config = config or default_settings
        self.pool: Optional[ThreadedConnectionPool] = None
        # ThreadedConnectionPool raises PoolError when empty; callers wait here instead
        self._slots = threading.BoundedSemaphore(self.config.DB_POOL_MAX)
        # Connection whose transaction is open on the current thread
        self._local = threading.local()
        self._initialize_pool()

    def _initialize_pool(self):
        """Create connection pool"""
        try:
            if self.config.DATABASE_URL:
                self.pool = ThreadedConnectionPool(
                    self.config.DB_POOL_MIN,
                    self.config.DB_POOL_MAX,
                    dsn=self.config.DATABASE_URL
                )
            else:
                self.pool = ThreadedConnectionPool(
                    self.config.DB_POOL_MIN,
                    self.config.DB_POOL_MAX,
                    host=self.config.DB_HOST,
                    port=self.config.DB_PORT,
                    database=self.config.DB_NAME,
                    user=self.config.DB_USER,
                    password=self.config.DB_PASSWORD
                )
            logger.info("Database connection pool initialized")
        except psycopg2.Error as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections

        Commits when the block exits normally, rolls back otherwise. A whole
        read-modify-write runs inside one block so row locks taken with
        SELECT ... FOR UPDATE are held until the commit.

        A nested call on the same thread joins the open transaction instead
        of taking a second pooled connection, so reads and writes made by a
        store mutator commit or roll back together with the outer update.

        Usage:
            with db.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM table")
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        with self._slots:
            conn = None
            try:
                conn = self.pool.getconn()
                self._local.conn = conn
                yield conn
                conn.commit()
            except psycopg2.Error as e:
                if conn:
                    conn.rollback()
                logger.error(f"Database error: {e}")
                raise
            except Exception:
                # Domain errors raised inside a read-modify-write abort the transaction
                if conn:
                    conn.rollback()
                raise
            finally:
                self._local.conn = None
                if conn:
                    self.pool.putconn(conn)

    @contextmanager
    def get_cursor(self, dict_cursor: bool = True):
        """
        Context manager for database cursors

        Args:
            dict_cursor: If True, returns results as dictionaries

        Usage:
            with db.get_cursor() as cursor:
                cursor.execute("SELECT * FROM table")
                results = cursor.fetchall()
        """
        with self.get_connection() as conn:
            cursor_factory = RealDictCursor if dict_cursor else None
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
            finally:
                cursor.close()

    def execute_query(
        self,
        query: str,
        params: Optional[Tuple] = None,
        fetch_one: bool = False,
        dict_cursor: bool = True
    ) -> Optional[Any]:
        """
        Execute a SELECT query and return results

        Args:
            query: SQL query string
            params: Query parameters
            fetch_one: If True, return single row; otherwise return all rows
            dict_cursor: If True, return results as dictionaries

        Returns:
            Query results (single row, list of rows, or None)
        """
        with self.get_cursor(dict_cursor=dict_cursor) as cursor:
            cursor.execute(query, params)
            if fetch_one:
                return cursor.fetchone()
            return cursor.fetchall()

    def execute_update(
        self,
        query: str,
        params: Optional[Tuple] = None
    ) -> int:
        """
        Execute an INSERT/UPDATE/DELETE query

        Returns:
            Number of rows affected
        """
        with self.get_cursor(dict_cursor=False) as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    def close(self):
        """Close all database connections in the pool"""
        if self.pool:
            self.pool.closeall()
            logger.info("Database connection pool closed")


_db: Optional[Database] = None


def get_db() -> Database:
    """Get the global database instance, creating the pool on first use"""
    global _db
    if _db is None:
        _db = Database()
    return _db


def reset_db() -> None:
    """Close and forget the global database instance (useful for testing)"""
    global _db
    if _db is not None:
        _db.close()
    _db = None
