from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from billing.config import Settings
from billing.errors import PersistenceError

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None
_schema: str = ""


def init_pool(cfg: Settings) -> None:
    """Open the shared pool once; a no-op when the database is not configured."""
    global _pool, _schema
    if _pool is not None or not cfg.db_enabled:
        return
    _schema = cfg.db_schema
    _pool = ThreadedConnectionPool(1, 10, dsn=cfg.db_dsn)
    logger.info("db pool initialised", extra={"endpoint": cfg.db_host})


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def _checkout(pool: ThreadedConnectionPool) -> psycopg2.extensions.connection:
    # A pooled connection may have been closed server-side; replace it once.
    for attempt in (1, 2):
        conn = pool.getconn()
        try:
            if _schema:
                with conn.cursor() as cur:
                    cur.execute(f"SET search_path TO {_schema}")
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            pool.putconn(conn, close=True)
            if attempt == 2:
                raise
    raise AssertionError("unreachable")


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    """Yield a pooled connection; commit on success, roll back on error."""
    pool = _pool
    if pool is None:
        raise PersistenceError("Database pool not initialised")
    conn = _checkout(pool)
    try:
        yield conn
        conn.commit()
    except BaseException:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        pool.putconn(conn)
