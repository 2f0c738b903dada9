"""Database connections for the migrator.

The application protocol issues its own ``BEGIN`` / ``COMMIT`` /
``ROLLBACK`` statements, so every connection handed out here is in
autocommit mode at the driver level.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg_pool import ConnectionPool

from pg_migrate.errors import ConfigError
from pg_migrate.settings import get_settings

_SQLITE_PREFIX = "sqlite:///"
_DEFAULT_SQLITE_TIMEOUT_MS = 5000

_pool: ConnectionPool | None = None


def _sqlite_path(url: str) -> str:
    path = url[len(_SQLITE_PREFIX):]
    return path or ":memory:"


def connect_sqlite(path: str, lock_timeout_ms: int | None = None) -> sqlite3.Connection:
    """Open an autocommit SQLite connection with foreign keys enforced."""
    timeout_ms = _DEFAULT_SQLITE_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms
    conn = sqlite3.connect(
        path,
        timeout=timeout_ms / 1000,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def connect(url: str | None = None, lock_timeout_ms: int | None = None) -> Any:
    """Open a standalone autocommit connection for ``url``.

    ``postgresql://`` URLs use psycopg 3; ``sqlite:///path`` URLs use sqlite3.
    """
    settings = get_settings()
    url = url or settings.database_url
    if lock_timeout_ms is None:
        lock_timeout_ms = settings.lock_timeout_ms

    if url.startswith(_SQLITE_PREFIX):
        return connect_sqlite(_sqlite_path(url), lock_timeout_ms)
    if url.startswith(("postgresql://", "postgres://")):
        return psycopg.connect(url, autocommit=True)
    raise ConfigError(f"Unsupported database URL scheme: {url.split(':', 1)[0]!r}")


def init_pool() -> ConnectionPool:
    """Initialize the PostgreSQL connection pool."""
    global _pool
    if _pool is not None:
        return _pool

    settings = get_settings()
    if not settings.database_url.startswith(("postgresql://", "postgres://")):
        raise ConfigError("Connection pooling requires a PostgreSQL database_url")
    _pool = ConnectionPool(
        conninfo=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        kwargs={"autocommit": True},
        open=True,
    )
    return _pool


def get_pool() -> ConnectionPool:
    """Get the connection pool, initializing if needed."""
    global _pool
    if _pool is None:
        return init_pool()
    return _pool


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None


@contextmanager
def get_connection() -> Iterator[Any]:
    """Get a connection for the configured database.

    PostgreSQL connections come from the pool; SQLite connections are opened
    and closed around the block.
    """
    settings = get_settings()
    if settings.database_url.startswith(_SQLITE_PREFIX):
        conn = connect(settings.database_url)
        try:
            yield conn
        finally:
            conn.close()
        return
    with get_pool().connection() as conn:
        yield conn
