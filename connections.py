"""SQL Server connections for the Curtailment and General databases.

Provides pyodbc connections (for MERGE/UPSERT and ops tables) and ConnectorX
URIs (for bulk reads of curtailment and calculation rows).
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from urllib.parse import quote_plus

import pyodbc

import config

logger = logging.getLogger(__name__)

# Connection overhead measurement across all threads of a run. Query via
# get_connection_overhead() at run end.
_overhead_lock = threading.Lock()
_connection_time_ms: float = 0.0
_connection_count: int = 0

# One long-lived connection per (thread, database). Worker threads upsert
# concurrently; pyodbc connections must not be shared between threads, so the
# pool is thread-local rather than per-process.
_local = threading.local()
_all_pooled: list[pyodbc.Connection] = []
_all_pooled_lock = threading.Lock()


def _pyodbc_connection_string(database: str) -> str:
    return (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
    )


def _connectorx_uri(database: str) -> str:
    usr = quote_plus(config.SQL_SERVER_USER)
    pwd = quote_plus(config.SQL_SERVER_PASSWORD)
    return (
        f"mssql://{usr}:{pwd}@{config.SQL_SERVER_HOST}:{config.SQL_SERVER_PORT}"
        f"/{database}?TrustServerCertificate=true"
    )


# --- pyodbc Connections ---

def get_general_connection() -> pyodbc.Connection:
    return get_connection(config.GENERAL_DB)


def get_connection(database: str) -> pyodbc.Connection:
    """Create a fresh pyodbc connection (not pooled)."""
    global _connection_time_ms, _connection_count
    start = time.monotonic()
    conn = pyodbc.connect(_pyodbc_connection_string(database), autocommit=True)
    elapsed = (time.monotonic() - start) * 1000
    with _overhead_lock:
        _connection_time_ms += elapsed
        _connection_count += 1
    return conn


def get_connection_overhead() -> tuple[float, int]:
    """Return cumulative connection overhead (total_ms, connection_count)."""
    with _overhead_lock:
        return _connection_time_ms, _connection_count


# --- ConnectorX URIs ---

def curtailment_connectorx_uri() -> str:
    return _connectorx_uri(config.CURTAILMENT_DB)


# --- Context Managers ---

@contextmanager
def cursor_for(database: str):
    """Context manager yielding a cursor on this thread's pooled connection.

    On pyodbc.OperationalError (connection dropped, server restart), the stale
    connection is evicted from the thread's pool and the error propagates to
    the caller, which decides whether the failure is retryable.

    Usage::

        with cursor_for(config.CURTAILMENT_DB) as cur:
            cur.execute("SELECT 1")
            row = cur.fetchone()
    """
    pool = getattr(_local, "pool", None)
    if pool is None:
        pool = _local.pool = {}

    conn = pool.get(database)
    if conn is None:
        conn = get_connection(database)
        pool[database] = conn
        with _all_pooled_lock:
            _all_pooled.append(conn)

    cursor = conn.cursor()
    try:
        yield cursor
    except pyodbc.OperationalError:
        pool.pop(database, None)
        try:
            conn.close()
        except pyodbc.Error:
            pass
        raise
    finally:
        try:
            cursor.close()
        except pyodbc.Error:
            pass


def close_connection_pool() -> None:
    """Close every pooled connection opened by any thread. Call at shutdown."""
    with _all_pooled_lock:
        conns = _all_pooled[:]
        _all_pooled.clear()
    for conn in conns:
        try:
            conn.close()
        except pyodbc.Error:
            pass
    if conns:
        logger.debug("Connection pool closed (%d connections)", len(conns))
