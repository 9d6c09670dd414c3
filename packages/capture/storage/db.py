"""
Database connection handler with connection pooling.

Every capture-store operation goes through ``DatabasePool.execute`` (one
statement, own transaction) or ``DatabasePool.transaction`` (several
statements committed together, e.g. saving a discovered market set).
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from packages.capture.settings import settings

logger = logging.getLogger(__name__)


class DatabasePool:
    """
    Singleton database connection pool manager.

    Uses psycopg3 with dict rows so query helpers can return plain dicts.
    """

    _instance: Optional["DatabasePool"] = None
    _pool: Optional[ConnectionPool] = None

    def __new__(cls) -> "DatabasePool":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def initialize(self, conninfo: Optional[str] = None) -> None:
        """
        Open the connection pool.

        Args:
            conninfo: PostgreSQL connection string. Defaults to settings.database_url
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        logger.info("Initializing capture store connection pool...")
        self._pool = ConnectionPool(
            conninfo=conninfo or settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=settings.db_connection_timeout,
            open=True,
            kwargs={"row_factory": dict_row},
        )
        logger.info(
            f"Capture store pool initialized (min={settings.db_pool_min_size}, "
            f"max={settings.db_pool_max_size})"
        )

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self.initialize()
        return self._pool

    @contextmanager
    def transaction(self) -> Generator[psycopg.Cursor, None, None]:
        """
        Cursor whose statements commit together or not at all.

        Usage:
            with db.transaction() as cur:
                cur.execute("INSERT INTO markets ...", params)
                cur.execute("UPDATE capture_requests ...", params)
        """
        with self.pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur

    def execute(
        self,
        query: str,
        params: Optional[tuple] = None,
        fetch: bool = False,
    ) -> Optional[list[dict]]:
        """
        Execute a single statement in its own transaction.

        Returns:
            List of dict rows if fetch=True, else None
        """
        with self.transaction() as cur:
            cur.execute(query, params)
            if fetch:
                return cur.fetchall()
        return None

    def execute_many(self, query: str, params_seq: list[tuple]) -> int:
        """Execute one statement for each parameter tuple; returns rows affected."""
        if not params_seq:
            return 0
        with self.transaction() as cur:
            cur.executemany(query, params_seq)
            return cur.rowcount

    def health_check(self) -> bool:
        try:
            result = self.execute("SELECT 1 AS health", fetch=True)
            return bool(result)
        except psycopg.Error as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._pool is not None:
            logger.info("Closing capture store pool...")
            self._pool.close()
            self._pool = None
            DatabasePool._instance = None


# Module-level singleton instance
_db_pool: Optional[DatabasePool] = None


def get_db_pool() -> DatabasePool:
    """
    Get or create the database pool singleton.

    Usage:
        from packages.capture.storage import get_db_pool

        db = get_db_pool()
        rows = db.execute("SELECT * FROM capture_requests WHERE status = %s", ("pending",), fetch=True)
    """
    global _db_pool
    if _db_pool is None:
        _db_pool = DatabasePool()
        _db_pool.initialize()
    return _db_pool


def reset_db_pool() -> None:
    """Close and forget the pool (used on shutdown and in tests)."""
    global _db_pool
    if _db_pool is not None:
        _db_pool.close()
        _db_pool = None
