"""CLI common boilerplate — shared setup for the reconcile commands.

Centralizes logging setup, the connection-capacity warning, signal handling,
checkpoint store selection and connection shutdown for main_reconcile.py.

Import this module BEFORE any other project imports in main_*.py files.
Module-level code puts the project root on sys.path.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path

# Ensure project root is on sys.path for imports
sys.path.insert(0, str(Path(__file__).parent))

import config
from observability.log_handler import SqlServerLogHandler

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(run_id: str | None = None) -> SqlServerLogHandler | None:
    """Configure logging: stdout StreamHandler + SqlServerLogHandler (LOG_TO_DB).

    Args:
        run_id: Reconciliation run id for log context.

    Returns:
        The SqlServerLogHandler instance (for flush), or None when LOG_TO_DB is off.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    if not any(getattr(h, "_reconcile_console", False) for h in root.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(logging.INFO)
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        console._reconcile_console = True
        root.addHandler(console)

    if not config.LOG_TO_DB:
        return None

    sql_handler = SqlServerLogHandler(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    sql_handler.setFormatter(logging.Formatter("%(message)s"))
    if run_id is not None:
        sql_handler.set_context(run_id=run_id)
    root.addHandler(sql_handler)
    return sql_handler


def warn_concurrency(concurrency: int) -> None:
    """Warn if worker threads exceed the database connection budget.

    Each worker holds its own pooled connection while upserting; running more
    workers than DB_POOL_SIZE only adds connection contention.
    """
    if concurrency > config.DB_POOL_SIZE:
        logger.warning(
            "Running with concurrency=%d but DB_POOL_SIZE=%d. Workers beyond the "
            "pool size will contend for connections. Recommended: --concurrency %d or fewer.",
            concurrency, config.DB_POOL_SIZE, config.DB_POOL_SIZE,
        )


def build_checkpoint_store(backend: str | None = None, directory: str | None = None):
    """Checkpoint store for the CLI. An explicit directory implies the file backend."""
    from reconcile.checkpoint import get_checkpoint_store

    if directory is not None:
        backend = "file"
    return get_checkpoint_store(backend, directory)


def install_signal_handlers(on_signal) -> dict:
    """Route SIGINT/SIGTERM to ``on_signal(reason)``. Returns previous handlers.

    Only the main thread may install handlers; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning("Received %s — cancelling run (in-flight gaps will finish)", name)
        on_signal(f"cancelled by {name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def log_connection_overhead() -> None:
    """Log cumulative connection overhead at run end."""
    from connections import get_connection_overhead
    total_ms, count = get_connection_overhead()
    if count > 0:
        logger.info(
            "Connection overhead: %.1f ms total across %d connections (%.1f ms avg)",
            total_ms, count, total_ms / count,
        )


def shutdown_connections() -> None:
    """Close pooled connections at shutdown."""
    from connections import close_connection_pool
    close_connection_pool()
