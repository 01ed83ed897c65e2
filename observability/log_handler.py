"""SqlServerLogHandler: logging.Handler -> General.ops.ReconcileLog.

The RunId is process-wide (one reconciliation run per process). The worker
label is per thread and defaults to the thread name, so records emitted from
the pool show up as reconcile-worker_N without any explicit set_context call.
"""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from datetime import datetime, timezone

_MAX_TEXT = 4000

_INSERT_SQL = """
    INSERT INTO ops.ReconcileLog (
        RunId, Worker, LogLevel, Module, FunctionName,
        Message, ErrorType, StackTrace, CreatedAt
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _exception_columns(record: logging.LogRecord) -> tuple[str | None, str | None]:
    if not record.exc_info or record.exc_info[1] is None:
        return None, None
    stack = "".join(traceback.format_exception(*record.exc_info))
    return type(record.exc_info[1]).__name__, stack[:_MAX_TEXT]


class SqlServerLogHandler(logging.Handler):
    """Buffers log rows for the current run and inserts them in batches.

    Records without a run id (emitted before setup_logging) are dropped.
    """

    def __init__(self, level: int = logging.INFO, buffer_size: int = 10) -> None:
        super().__init__(level)
        self._run_id: str | None = None
        self._local = threading.local()
        self._pending: list[tuple] = []
        self._lock = threading.Lock()
        self._batch_size = max(1, buffer_size)

    def set_context(self, run_id: str | None = None, worker: str | None = None) -> None:
        if run_id is not None:
            self._run_id = run_id
        self._local.worker = worker

    def _row(self, record: logging.LogRecord) -> tuple | None:
        if self._run_id is None:
            return None
        worker = getattr(self._local, "worker", None) or record.threadName
        error_type, stack = _exception_columns(record)
        return (
            self._run_id,
            worker,
            record.levelname,
            record.name,
            record.funcName,
            self.format(record)[:_MAX_TEXT],
            error_type,
            stack,
            datetime.now(timezone.utc),
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            row = self._row(record)
            if row is None:
                return
            with self._lock:
                self._pending.append(row)
                # WARNING+ goes out immediately so a crash does not lose it.
                if record.levelno >= logging.WARNING or len(self._pending) >= self._batch_size:
                    self._drain()
        except Exception:
            self.handleError(record)

    def _write_rows(self, rows: list[tuple]) -> None:
        import connections

        conn = connections.get_general_connection()
        try:
            cursor = conn.cursor()
            cursor.executemany(_INSERT_SQL, rows)
            cursor.close()
            conn.commit()
        finally:
            conn.close()

    def _drain(self) -> None:
        rows, self._pending = self._pending, []
        if not rows:
            return
        try:
            self._write_rows(rows)
        except Exception as e:
            # Going through logging here would re-enter emit().
            print(f"[SqlServerLogHandler] FLUSH FAILED, {len(rows)} rows dropped: {e}",
                  file=sys.stderr)

    def flush(self) -> None:
        with self._lock:
            self._drain()

    def close(self) -> None:
        self.flush()
        super().close()
