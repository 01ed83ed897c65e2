"""Progress reporting and run/checkpoint summaries.

The reporter never touches coordinator state; it only sees immutable
ProgressSnapshot values handed to it from the dispatch loop.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass

import config
from reconcile.models import RunCheckpoint, RunSummary

logger = logging.getLogger(__name__)

# Recent-throughput window (report ticks).
_THROUGHPUT_SAMPLES = 6
_MAX_FAILURES_SHOWN = 10


@dataclass(frozen=True)
class ProgressSnapshot:
    run_id: str
    total: int
    succeeded: int
    failed: int
    pending: int
    in_flight: int
    waiting_retry: int
    elapsed_seconds: float

    @property
    def done(self) -> int:
        return self.succeeded + self.failed

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.done / self.total * 100


def _rss_mb() -> float | None:
    try:
        import psutil
    except ImportError:
        return None  # psutil not installed, progress lines omit RSS
    return psutil.Process().memory_info().rss / (1024 ** 2)


def _format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


class ProgressReporter:
    """Logs a progress line at most once every ``interval`` seconds."""

    def __init__(self, interval: float | None = None, clock=time.monotonic) -> None:
        self.interval = config.RECONCILE_REPORT_INTERVAL if interval is None else interval
        self._clock = clock
        self._last_report = clock()
        self._samples: deque[tuple[float, int]] = deque(maxlen=_THROUGHPUT_SAMPLES)

    def seconds_until_due(self) -> float:
        return max(0.0, self._last_report + self.interval - self._clock())

    def report(self, snapshot: ProgressSnapshot, force: bool = False) -> str | None:
        """Log and return a progress line if one is due (or ``force``)."""
        now = self._clock()
        if not force and now - self._last_report < self.interval:
            return None
        self._last_report = now
        self._samples.append((now, snapshot.done))
        line = self.format_progress(snapshot)
        logger.info("%s", line)
        return line

    def recent_rate(self) -> float | None:
        """Gaps per second across the sampled window, None until two samples exist."""
        if len(self._samples) < 2:
            return None
        (t0, d0), (t1, d1) = self._samples[0], self._samples[-1]
        if t1 <= t0:
            return None
        return (d1 - d0) / (t1 - t0)

    def format_progress(self, snapshot: ProgressSnapshot) -> str:
        overall = snapshot.done / snapshot.elapsed_seconds if snapshot.elapsed_seconds > 0 else 0.0
        recent = self.recent_rate()
        rate_for_eta = recent if recent else overall
        remaining = snapshot.total - snapshot.done
        if remaining <= 0:
            eta = "0s"
        elif rate_for_eta > 0:
            eta = _format_duration(remaining / rate_for_eta)
        else:
            eta = "unknown"

        parts = [
            f"[{snapshot.run_id}] {snapshot.done}/{snapshot.total} ({snapshot.percent:.1f}%)",
            f"pending={snapshot.pending}",
            f"in_flight={snapshot.in_flight}",
            f"retry_wait={snapshot.waiting_retry}",
            f"failed={snapshot.failed}",
            f"rate={overall:.2f}/s",
        ]
        if recent is not None:
            parts.append(f"recent={recent:.2f}/s")
        parts.append(f"eta={eta}")
        rss = _rss_mb()
        if rss is not None:
            parts.append(f"rss={rss:.0f}MB")
        return " ".join(parts)


def format_summary(summary: RunSummary) -> str:
    """Render the end-of-run table printed by ``reconcile run``."""
    lines = [
        "",
        f"Reconciliation run: {summary.run_id}",
        "-" * 48,
        f"{'State':<20} {summary.state.value}",
        f"{'Total gaps':<20} {summary.total_gaps}",
        f"{'Processed':<20} {summary.processed}",
        f"{'Succeeded':<20} {summary.succeeded}",
        f"{'Failed':<20} {summary.failed}",
        f"{'Pending':<20} {summary.pending}",
        f"{'Work items':<20} {summary.work_items}",
        f"{'Elapsed':<20} {_format_duration(summary.elapsed_seconds)}",
    ]
    if summary.refreshed_dates:
        lines.append(f"{'Summaries refreshed':<20} {len(summary.refreshed_dates)} date(s)")
    if summary.error:
        lines.append(f"{'Error':<20} {summary.error}")
    if summary.failures:
        lines.append("")
        lines.append(f"Failed gaps (first {min(len(summary.failures), _MAX_FAILURES_SHOWN)}):")
        for gap_id, reason in summary.failures[:_MAX_FAILURES_SHOWN]:
            lines.append(f"  {gap_id:<40} {reason}")
    return "\n".join(lines)


def format_status(checkpoint: RunCheckpoint | None, run_id: str = "") -> str:
    """Render a checkpoint for ``reconcile status``."""
    if checkpoint is None:
        return f"No checkpoint found for run {run_id}"

    scope = checkpoint.scope
    if "keys" in scope:
        scope_text = f"{len(scope['keys'])} explicit keys"
    else:
        scope_text = f"{scope.get('start')}..{scope.get('end')}"

    lines = [
        f"Run:        {checkpoint.run_id}",
        f"Status:     {checkpoint.status}{' (finalized)' if checkpoint.is_finalized else ''}",
        f"Scope:      {scope_text}",
        f"Models:     {', '.join(checkpoint.models)}",
        f"Progress:   {len(checkpoint.completed) + len(checkpoint.failed)}/{checkpoint.total_gaps} "
        f"({checkpoint.percent_complete:.1f}%)",
        f"Completed:  {len(checkpoint.completed)}",
        f"Failed:     {len(checkpoint.failed)}",
        f"Pending:    {len(checkpoint.pending)}",
        f"Processed:  {checkpoint.processed} gap outcome(s) including retries "
        f"({checkpoint.succeeded} succeeded, {checkpoint.failed_count} failed terminally)",
        f"Updated:    {checkpoint.updated_at}",
    ]
    if checkpoint.failed:
        lines.append("Failures:")
        for gap_id, entry in sorted(checkpoint.failed.items())[:_MAX_FAILURES_SHOWN]:
            lines.append(f"  {gap_id:<40} {entry.get('reason', '')}")
    return "\n".join(lines)
