"""
Database connection factory utilities for tablecore.

Provides centralized management of PostgreSQL connections and the shared
connection pool used by the PostgreSQL provider. The PoolManager singleton
ensures the pool is closed on application exit.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import atexit
import threading
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tablecore.config import Settings, build_dsn, get_settings
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

_TRANSIENT = (psycopg.OperationalError, psycopg.InterfaceError)


def _connect_options(settings: Settings) -> dict:
    # statement timeout applies to every session handed out
    return {"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"}


class PoolManager:
    """
    Thread-safe singleton owning the shared connection pool.

    The pool is created lazily on first use and closed by an atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_sync_pool(self, min_size: int = 1, max_size: int = 10) -> ConnectionPool:
        """
        Get or create the connection pool.

        Parameters
        ----------
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int
            Maximum total connections in the pool.

        Returns
        -------
        ConnectionPool
            The managed pool instance.
        """
        with self._lock:
            if self._pool is None:
                settings = get_settings()
                self._pool = ConnectionPool(
                    conninfo=build_dsn(settings),
                    min_size=min_size,
                    max_size=max_size,
                    kwargs=_connect_options(settings),
                    open=True,
                )
                log.debug("Opened connection pool", extra={"min_size": min_size, "max_size": max_size})
            return self._pool

    @contextmanager
    def sync_connection(self) -> Generator[Connection, None, None]:
        """
        Context manager for borrowing a pooled connection.

        Example
        -------
            manager = PoolManager()
            with manager.sync_connection() as conn:
                store = PostgresStore(conn, metadata)
        """
        pool = self.get_sync_pool()
        with pool.connection() as conn:
            yield conn

    def close_all(self) -> None:
        """Close the pool; called automatically on exit."""
        with self._lock:
            if self._pool is not None:
                try:
                    self._pool.close()
                except psycopg.Error as exc:
                    log.warning(f"Error while closing connection pool: {exc}")
                finally:
                    self._pool = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(_TRANSIENT),
    reraise=True,
)
def get_sync_connection(settings: Optional[Settings] = None) -> Connection:
    """
    Open a dedicated connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection
    errors. Use this for the CLI and one-off scripts; prefer the pool for
    repeated use.

    Returns
    -------
    Connection
        A new psycopg connection instance.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    settings = settings or get_settings()
    return psycopg.connect(build_dsn(settings), **_connect_options(settings))


def get_sync_pool(min_size: int = 1, max_size: int = 10) -> ConnectionPool:
    """Get or create the shared pool via PoolManager."""
    manager = PoolManager()
    return manager.get_sync_pool(min_size=min_size, max_size=max_size)


__all__ = ["PoolManager", "get_sync_connection", "get_sync_pool"]
