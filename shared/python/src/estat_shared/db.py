"""
db.py — PostgreSQL connection pool singleton.

Usage:
    from estat_shared.db import pg_transaction

    with pg_transaction() as cur:
        cur.execute("SELECT 1")

Connections are checked out per transaction and returned as soon as the
transaction commits or rolls back, so no caller holds one across an
unrelated wait.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

import psycopg2
import structlog
from psycopg2 import pool

from estat_shared.config import settings

logger = structlog.get_logger(__name__)

_pool_lock = threading.Lock()
_pg_pool: Optional[pool.ThreadedConnectionPool] = None


def get_pg_pool() -> pool.ThreadedConnectionPool:
    """
    Return the process-wide thread-safe connection pool.

    The DSN and pool bounds come from settings.database_url,
    settings.db_pool_min and settings.db_pool_max.
    """
    global _pg_pool

    with _pool_lock:
        if _pg_pool is None:
            _pg_pool = pool.ThreadedConnectionPool(
                settings.db_pool_min,
                settings.db_pool_max,
                dsn=settings.database_url,
            )
            logger.info(
                "pg_pool_created",
                min_conn=settings.db_pool_min,
                max_conn=settings.db_pool_max,
            )
        return _pg_pool


@contextmanager
def pg_transaction(
    pg_pool: pool.AbstractConnectionPool | None = None,
) -> Iterator[psycopg2.extensions.cursor]:
    """
    Yield a cursor inside a single transaction.

    Commits when the block exits normally, rolls back on any exception
    and always returns the connection to the pool.
    """
    active_pool = pg_pool or get_pg_pool()
    conn = active_pool.getconn()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        active_pool.putconn(conn)


def reset_pg_pool() -> None:
    """Close and drop the pool singleton; the next get_pg_pool() opens a new one."""
    global _pg_pool
    with _pool_lock:
        if _pg_pool is not None:
            _pg_pool.closeall()
            _pg_pool = None
