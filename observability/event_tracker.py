"""RunEventTracker context manager -> General.ops.ReconcileEventLog.

Writes exactly one row per tracked run phase (DETECT, SUMMARY_REFRESH,
RUN_TOTAL). Failures to write an event are logged and never fail the run.

Usage:
    tracker = RunEventTracker()
    with tracker.track("DETECT", run_id) as event:
        gaps = detector.detect(scope)
        event.rows_processed = len(gaps)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import config

logger = logging.getLogger(__name__)


@dataclass
class RunEvent:
    """Mutable event object — caller code may set counts inside the with block."""

    event_type: str
    run_id: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0
    status: str = "SUCCESS"
    error_message: str | None = None
    event_detail: str | None = None
    rows_processed: int = 0


class RunEventTracker:
    """Tracks run phases and writes them to General.ops.ReconcileEventLog.

    Args:
        enabled: Write events at all (default config.EVENT_LOG_ENABLED).
        writer: ``(RunEvent) -> None``; defaults to a pyodbc INSERT.
    """

    def __init__(self, enabled: bool | None = None, writer=None) -> None:
        self.enabled = config.EVENT_LOG_ENABLED if enabled is None else enabled
        self._writer = writer or _insert_event

    @contextmanager
    def track(self, event_type: str, run_id: str):
        """Context manager that yields a RunEvent for the caller to populate."""
        event = RunEvent(event_type=event_type, run_id=run_id)
        event.started_at = datetime.now(timezone.utc)
        try:
            yield event
            if event.status != "SKIPPED":
                event.status = "SUCCESS"
        except Exception as e:
            event.status = "FAILED"
            event.error_message = str(e)[:4000]
            raise
        finally:
            event.completed_at = datetime.now(timezone.utc)
            event.duration_ms = (
                (event.completed_at - event.started_at).total_seconds() * 1000
            )
            logger.debug("Event %s for run %s: %s in %.0f ms",
                         event.event_type, run_id, event.status, event.duration_ms)
            if self.enabled:
                self._write_event(event)

    def _write_event(self, event: RunEvent) -> None:
        try:
            self._writer(event)
        except Exception:
            logger.exception("Failed to write event to ReconcileEventLog")


def _insert_event(event: RunEvent) -> None:
    import connections

    conn = connections.get_general_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO ops.ReconcileEventLog (
                RunId, EventType, EventDetail, StartedAt, CompletedAt,
                DurationMs, Status, ErrorMessage, RowsProcessed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            event.run_id,
            event.event_type,
            event.event_detail,
            event.started_at,
            event.completed_at,
            int(event.duration_ms),
            event.status,
            event.error_message,
            event.rows_processed,
        )
        cursor.close()
        conn.commit()
    finally:
        conn.close()
