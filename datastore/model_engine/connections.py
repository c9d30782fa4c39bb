"""
Driver connections for every supported database.

DatabaseConnections owns the process-wide driver handles and creates them
lazily, so an engine configured for one database never imports a
connection to another:

- MongoDB: one pymongo MongoClient (it pools internally)
- MySQL: a PyMySQL connection per operation
- PostgreSQL: a psycopg_pool ConnectionPool
- Local: a file path; the local backend opens SQLite itself

Invariants:
    - Handles are created at most once, under a lock
    - close() is idempotent and releases every handle that was created
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import pymysql
from psycopg_pool import ConnectionPool
from pymongo import MongoClient
from pymongo.database import Database

from .config import EngineConfig

logger = logging.getLogger(__name__)


class DatabaseConnections:
    """Lazily created driver handles for one engine configuration.

    Example:
        >>> connections = DatabaseConnections(EngineConfig.from_env())
        >>> with connections.postgres_connection() as conn:
        ...     conn.execute("SELECT 1")
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._mongo_client: Optional[MongoClient] = None
        self._postgres_pool: Optional[ConnectionPool] = None

    def mongo_client(self) -> MongoClient:
        with self._lock:
            if self._mongo_client is None:
                mongo = self.config.mongo
                self._mongo_client = MongoClient(
                    mongo.uri,
                    serverSelectionTimeoutMS=mongo.server_selection_timeout_ms,
                    tz_aware=False,
                )
                logger.info(f"Connected to MongoDB database {mongo.database}")
            return self._mongo_client

    def mongo_database(self) -> Database:
        return self.mongo_client()[self.config.mongo.database]

    @contextmanager
    def mysql_connection(self) -> Iterator[Any]:
        """Open a PyMySQL connection for one operation."""
        mysql = self.config.mysql
        conn = pymysql.connect(
            host=mysql.host,
            port=mysql.port,
            user=mysql.user,
            password=mysql.password or "",
            database=mysql.database,
            charset=mysql.charset,
            autocommit=False,
        )
        try:
            yield conn
        finally:
            conn.close()

    def postgres_pool(self) -> ConnectionPool:
        with self._lock:
            if self._postgres_pool is None:
                postgres = self.config.postgres
                self._postgres_pool = ConnectionPool(
                    conninfo=postgres.conninfo(),
                    min_size=postgres.pool_min_size,
                    max_size=postgres.pool_max_size,
                    open=True,
                )
                logger.info(
                    f"Opened PostgreSQL pool ({postgres.pool_min_size}-{postgres.pool_max_size})"
                )
            return self._postgres_pool

    @contextmanager
    def postgres_connection(self) -> Iterator[Any]:
        """Check a connection out of the pool for one operation."""
        with self.postgres_pool().connection() as conn:
            yield conn

    @property
    def local_path(self) -> str:
        return self.config.local.path

    def close(self) -> None:
        """Release every driver handle that was created."""
        with self._lock:
            if self._mongo_client is not None:
                self._mongo_client.close()
                self._mongo_client = None
            if self._postgres_pool is not None:
                self._postgres_pool.close()
                self._postgres_pool = None
        logger.info("Closed database connections")
