"""Run coordinator: owns all mutable run state and drives the worker pool.

States: INITIALIZING -> RUNNING -> DRAINING -> COMPLETED | ABORTED.

The coordinator is the only writer of the pending queue, in-flight map,
backoff heap, attempt counters and checkpoint. Workers communicate with it
exclusively through the inbox queue, one message per finished WorkItem.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections import Counter, deque
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date

import config
from reconcile.checkpoint import CheckpointWriter, validate_run_id
from reconcile.errors import CheckpointIOError, DetectionError, InvalidScope
from reconcile.models import (
    Gap,
    RunCheckpoint,
    RunState,
    RunSummary,
    Scope,
    WorkItem,
    WorkItemStatus,
    utc_now_iso,
)
from reconcile.prioritizer import build_work_items, order_gaps
from reconcile.reporter import ProgressReporter, ProgressSnapshot
from reconcile.retry import RetryPolicy
from reconcile.worker import Worker, WorkerMessage, WorkerPool

logger = logging.getLogger(__name__)

# Upper bound on a single inbox wait so signal-driven cancellation is noticed.
_MAX_WAIT_SECONDS = 0.5
_MAX_SUMMARY_FAILURES = 20


@dataclass(frozen=True)
class ReconcileSettings:
    """Tunables for one run. Defaults come from config."""

    concurrency: int = config.RECONCILE_CONCURRENCY
    batch_size: int = config.RECONCILE_BATCH_SIZE
    max_attempts: int = config.RECONCILE_MAX_ATTEMPTS
    backoff_base: float = config.RECONCILE_BACKOFF_BASE
    backoff_max: float = config.RECONCILE_BACKOFF_MAX
    report_interval: float = config.RECONCILE_REPORT_INTERVAL
    checkpoint_interval: float = config.CHECKPOINT_INTERVAL
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.checkpoint_interval < 0:
            raise ValueError(f"checkpoint_interval must be >= 0, got {self.checkpoint_interval}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.backoff_base, self.backoff_max)


class Coordinator:
    """Reconciles one scope under one run id.

    Args:
        run_id: Checkpoint identity; a non-finalized checkpoint is resumed.
        scope: Dates or explicit keys to reconcile.
        detector: GapDetector (``detect(scope)``, ``models``).
        recompute: ``recompute(gap) -> value``; persists before returning.
        store: Checkpoint store (``load``/``save``/``finalize``).
        settings: ReconcileSettings; defaults from config.
        reporter: ProgressReporter; built from ``settings.report_interval``.
        summary_refresher: Optional ``refresher(dates)`` run while draining.
        event_tracker: Optional RunEventTracker for phase timings.
        on_day_settled: Optional ``callback(date)`` once a settlement day has no
            open gaps left, so dataset readers can drop that day from memory.
        cancel_event: Shared cancellation flag (e.g. set by a signal handler).
    """

    def __init__(
        self,
        run_id: str,
        scope: Scope,
        detector,
        recompute,
        store,
        settings: ReconcileSettings | None = None,
        *,
        reporter: ProgressReporter | None = None,
        summary_refresher=None,
        event_tracker=None,
        on_day_settled=None,
        cancel_event: threading.Event | None = None,
        clock=time.monotonic,
    ) -> None:
        self.run_id = validate_run_id(run_id)
        self.scope = scope
        self._detector = detector
        self._recompute = recompute
        self._store = store
        self.settings = settings or ReconcileSettings()
        self._policy = self.settings.retry_policy
        self._reporter = reporter or ProgressReporter(self.settings.report_interval, clock=clock)
        self._summary_refresher = summary_refresher
        self._event_tracker = event_tracker
        self._on_day_settled = on_day_settled
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock

        self.state = RunState.INITIALIZING
        self._inbox: queue.Queue = queue.Queue()
        self._ids = itertools.count(1)
        self._pending: deque[WorkItem] = deque()
        self._in_flight: dict[int, tuple[int, float, WorkItem]] = {}
        self._idle: set[int] = set()
        self._backoff: list[tuple[float, int, WorkItem]] = []
        self._attempts: dict[str, int] = {}
        self._outstanding: dict[str, Gap] = {}
        self._touched_dates: set[date] = set()
        self._open_per_day: Counter = Counter()
        self._failures: list[tuple[str, str]] = []
        self._checkpoint: RunCheckpoint | None = None
        self._writer: CheckpointWriter | None = None
        self._pool: WorkerPool | None = None

        self._total_gaps = 0
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._work_items = 0
        self._stop_reason: str | None = None
        self._started_at = 0.0
        self._last_checkpoint_at = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cooperative cancellation. Safe to call from any thread."""
        if self._stop_reason is None:
            self._stop_reason = reason
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(self) -> RunSummary:
        """Execute the run to COMPLETED or ABORTED.

        Raises:
            InvalidScope: The run id has an unfinished checkpoint for another scope.
        """
        self._started_at = self._clock()
        with self._track("RUN_TOTAL"):
            try:
                self._initialize()
            except (DetectionError, CheckpointIOError) as e:
                logger.error("Run %s aborted during initialization: %s", self.run_id, e)
                self.state = RunState.ABORTED
                return self._summary(error=str(e))

            self.state = RunState.RUNNING
            logger.info(
                "Run %s: %d gap(s) in %d work item(s), concurrency=%d, batch_size=%d",
                self.run_id, self._total_gaps, len(self._pending),
                self.settings.concurrency, self.settings.batch_size,
            )

            self._writer = CheckpointWriter(self._store)
            workers = [Worker(i, self._recompute) for i in range(1, self.settings.concurrency + 1)]
            self._pool = WorkerPool(workers, self._inbox, self._cancel_event)
            self._idle = set(self._pool.worker_ids)

            checkpoint_error: CheckpointIOError | None = None
            try:
                self._loop()
            except CheckpointIOError as e:
                logger.error("Run %s: checkpoint write failed, aborting: %s", self.run_id, e)
                checkpoint_error = e
                self.cancel(reason=str(e))
            finally:
                self._pool.shutdown(wait=True)

            return self._drain(checkpoint_error)

    # ------------------------------------------------------------------
    # INITIALIZING
    # ------------------------------------------------------------------

    def _initialize(self) -> None:
        models = [m.value for m in self._detector.models]
        existing = self._store.load(self.run_id)
        scope_dict = self.scope.to_dict()

        if existing is not None and not existing.is_finalized:
            if existing.scope != scope_dict:
                raise InvalidScope(
                    f"Run {self.run_id} has an unfinished checkpoint for scope "
                    f"{existing.scope}, not {scope_dict}. Use another --run-id."
                )
            checkpoint = existing
            checkpoint.status = "running"
            if checkpoint.models != models:
                logger.warning(
                    "Run %s: model set changed from %s to %s since last checkpoint",
                    self.run_id, checkpoint.models, models,
                )
                checkpoint.models = models
            logger.info(
                "Resuming run %s: %d completed, %d failed, %d pending in checkpoint",
                self.run_id, len(checkpoint.completed), len(checkpoint.failed),
                len(checkpoint.pending),
            )
        else:
            if existing is not None:
                logger.info("Run %s was finalized at %s — starting a fresh run",
                            self.run_id, existing.finalized_at)
            checkpoint = RunCheckpoint(run_id=self.run_id, scope=scope_dict, models=models)

        with self._track("DETECT"):
            gaps = self._detector.detect(self.scope)

        todo: list[Gap] = []
        skipped = 0
        source_changed = 0
        for gap in gaps:
            gap_id = gap.gap_id
            if gap_id in checkpoint.completed:
                if checkpoint.completed[gap_id] == gap.fingerprint:
                    skipped += 1
                    continue
                del checkpoint.completed[gap_id]
                source_changed += 1
            elif gap_id in checkpoint.failed:
                if checkpoint.failed[gap_id].get("fingerprint") == gap.fingerprint:
                    skipped += 1
                    continue
                del checkpoint.failed[gap_id]
                source_changed += 1
            todo.append(gap)

        if skipped or source_changed:
            logger.info(
                "Run %s: %d gap(s) already settled in checkpoint, %d re-queued after source change",
                self.run_id, skipped, source_changed,
            )

        ordered = order_gaps(todo)
        self._pending = deque(build_work_items(ordered, self.settings.batch_size, self._ids))
        self._outstanding = {g.gap_id: g for g in ordered}
        self._total_gaps = len(ordered)
        self._open_per_day = Counter(g.key.settlement_date for g in ordered)

        checkpoint.pending = list(self._outstanding)
        checkpoint.updated_at = utc_now_iso()
        checkpoint.validate()
        self._checkpoint = checkpoint
        self._store.save(checkpoint)
        self._last_checkpoint_at = self._clock()

        for day in self.scope.dates():
            if not self._open_per_day[day]:
                self._release_day(day)

    # ------------------------------------------------------------------
    # RUNNING
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        deadline = None
        if self.settings.timeout is not None:
            deadline = self._started_at + self.settings.timeout

        while True:
            self._writer.raise_if_failed()
            now = self._clock()

            if deadline is not None and now >= deadline and not self.cancelled:
                logger.warning("Run %s: timeout of %.1fs reached — cancelling",
                               self.run_id, self.settings.timeout)
                self.cancel(reason=f"timed out after {self.settings.timeout:g}s")

            if not self.cancelled:
                self._promote_retries(now)
                self._dispatch()

            if not self._in_flight and (self.cancelled or not (self._pending or self._backoff)):
                break

            self._reporter.report(self._progress())

            try:
                message = self._inbox.get(timeout=self._next_wait(deadline))
            except queue.Empty:
                continue
            self._handle(message)
            while True:
                try:
                    message = self._inbox.get_nowait()
                except queue.Empty:
                    break
                self._handle(message)

        self._reporter.report(self._progress(), force=True)

    def _next_wait(self, deadline: float | None) -> float:
        now = self._clock()
        wait = min(_MAX_WAIT_SECONDS, self._reporter.seconds_until_due())
        if not self.cancelled:
            if self._backoff:
                wait = min(wait, self._backoff[0][0] - now)
            if deadline is not None:
                wait = min(wait, deadline - now)
        return max(wait, 0.001)

    def _promote_retries(self, now: float) -> None:
        while self._backoff and self._backoff[0][0] <= now:
            _, _, item = heapq.heappop(self._backoff)
            self._pending.append(item)

    def _dispatch(self) -> None:
        while self._pending and self._idle:
            worker_id = min(self._idle)
            self._idle.discard(worker_id)
            item = self._pending.popleft()
            item.status = WorkItemStatus.ASSIGNED
            self._in_flight[item.item_id] = (worker_id, self._clock(), item)
            self._work_items += 1
            logger.debug("Dispatched item %d (%d gaps) to worker %d",
                         item.item_id, len(item), worker_id)
            self._pool.submit(worker_id, item)

    def _handle(self, message: WorkerMessage) -> None:
        result = message.result
        entry = self._in_flight.pop(result.item_id, None)
        if entry is None:
            logger.warning("Run %s: result for unknown item %d ignored", self.run_id, result.item_id)
            return
        _, assigned_at, item = entry
        self._idle.add(message.worker_id)
        item.status = result.status

        retries: list[Gap] = []
        delay = 0.0
        for outcome in result.outcomes:
            gap = outcome.gap
            self._processed += 1
            if outcome.ok:
                self._mark_completed(gap)
                continue
            attempts = self._attempts.get(gap.gap_id, 0)
            if outcome.retryable and self._policy.should_retry(attempts):
                delay = max(delay, self._policy.delay(attempts))
                self._attempts[gap.gap_id] = attempts + 1
                retries.append(gap)
            else:
                self._mark_failed(gap, outcome.error)

        if retries:
            retry_item = WorkItem(next(self._ids), tuple(retries), parent_id=item.item_id)
            heapq.heappush(self._backoff, (self._clock() + delay, retry_item.item_id, retry_item))
            logger.info(
                "Item %d: %d gap(s) scheduled for retry as item %d in %.2fs",
                item.item_id, len(retries), retry_item.item_id, delay,
            )

        if result.returned:
            returned_item = WorkItem(next(self._ids), result.returned, parent_id=item.item_id)
            self._pending.appendleft(returned_item)

        logger.debug(
            "Item %d on worker %d: %s in %.2fs",
            item.item_id, message.worker_id, item.status.value, self._clock() - assigned_at,
        )
        self._maybe_checkpoint()

    def _mark_completed(self, gap: Gap) -> None:
        gap_id = gap.gap_id
        self._outstanding.pop(gap_id, None)
        self._checkpoint.completed[gap_id] = gap.fingerprint
        self._succeeded += 1
        self._touched_dates.add(gap.key.settlement_date)
        self._settle(gap)

    def _mark_failed(self, gap: Gap, reason: str | None) -> None:
        gap_id = gap.gap_id
        reason = reason or "unknown error"
        self._outstanding.pop(gap_id, None)
        self._checkpoint.failed[gap_id] = {"reason": reason, "fingerprint": gap.fingerprint}
        self._failed += 1
        self._failures.append((gap_id, reason))
        logger.error("Gap %s failed terminally: %s", gap_id, reason)
        self._settle(gap)

    def _settle(self, gap: Gap) -> None:
        day = gap.key.settlement_date
        self._open_per_day[day] -= 1
        if self._open_per_day[day] <= 0:
            del self._open_per_day[day]
            self._release_day(day)

    def _release_day(self, day: date) -> None:
        if self._on_day_settled is None:
            return
        try:
            self._on_day_settled(day)
        except Exception:
            logger.exception("Run %s: releasing cached data for %s failed", self.run_id, day)

    def _snapshot_checkpoint(self, status: str = "running") -> RunCheckpoint:
        cp = self._checkpoint
        cp.status = status
        cp.pending = list(self._outstanding)
        cp.updated_at = utc_now_iso()
        return RunCheckpoint(
            run_id=cp.run_id,
            scope=dict(cp.scope),
            models=list(cp.models),
            status=cp.status,
            completed=dict(cp.completed),
            failed={k: dict(v) for k, v in cp.failed.items()},
            pending=list(cp.pending),
            processed=cp.processed + self._processed,
            succeeded=cp.succeeded + self._succeeded,
            failed_count=cp.failed_count + self._failed,
            created_at=cp.created_at,
            updated_at=cp.updated_at,
            finalized_at=cp.finalized_at,
        )

    def _submit_checkpoint(self, status: str = "running") -> None:
        self._writer.submit(self._snapshot_checkpoint(status))

    def _maybe_checkpoint(self) -> None:
        now = self._clock()
        if now - self._last_checkpoint_at < self.settings.checkpoint_interval:
            return
        self._last_checkpoint_at = now
        self._submit_checkpoint()

    def _progress(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            run_id=self.run_id,
            total=self._total_gaps,
            succeeded=self._succeeded,
            failed=self._failed,
            pending=sum(len(item) for item in self._pending),
            in_flight=sum(len(item) for _, _, item in self._in_flight.values()),
            waiting_retry=sum(len(item) for _, _, item in self._backoff),
            elapsed_seconds=self._clock() - self._started_at,
        )

    # ------------------------------------------------------------------
    # DRAINING
    # ------------------------------------------------------------------

    def _drain(self, checkpoint_error: CheckpointIOError | None) -> RunSummary:
        self.state = RunState.DRAINING
        complete = checkpoint_error is None and not self._outstanding
        error: str | None = str(checkpoint_error) if checkpoint_error else None

        if checkpoint_error is None:
            try:
                self._submit_checkpoint("running" if complete else "aborted")
                self._writer.flush()
            except CheckpointIOError as e:
                logger.error("Run %s: final checkpoint flush failed: %s", self.run_id, e)
                complete = False
                error = str(e)
        self._writer.close()

        refreshed: list[date] = []
        if checkpoint_error is None and self._summary_refresher and self._touched_dates:
            refreshed = sorted(self._touched_dates)
            try:
                with self._track("SUMMARY_REFRESH"):
                    self._summary_refresher(refreshed)
            except Exception:
                logger.exception("Run %s: daily summary refresh failed for %d date(s)",
                                 self.run_id, len(refreshed))
                refreshed = []

        if complete:
            try:
                self._store.finalize(self.run_id)
            except CheckpointIOError as e:
                logger.error("Run %s: checkpoint finalize failed: %s", self.run_id, e)
                complete = False
                error = str(e)

        if complete:
            self.state = RunState.COMPLETED
        else:
            self.state = RunState.ABORTED
            if error is None:
                error = self._stop_reason or "cancelled"
            logger.warning(
                "Run %s aborted (%s): %d gap(s) left pending in checkpoint",
                self.run_id, error, len(self._outstanding),
            )
        return self._summary(error=error, refreshed=refreshed)

    def _summary(self, error: str | None = None, refreshed: list[date] | None = None) -> RunSummary:
        summary = RunSummary(
            run_id=self.run_id,
            state=self.state,
            total_gaps=self._total_gaps,
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            pending=len(self._outstanding),
            work_items=self._work_items,
            elapsed_seconds=self._clock() - self._started_at,
            failures=self._failures[:_MAX_SUMMARY_FAILURES],
            error=error,
            refreshed_dates=refreshed or [],
        )
        logger.info(
            "Run %s %s: total=%d succeeded=%d failed=%d pending=%d elapsed=%.1fs",
            self.run_id, summary.state.value, summary.total_gaps, summary.succeeded,
            summary.failed, summary.pending, summary.elapsed_seconds,
        )
        return summary

    def _track(self, event_type: str):
        if self._event_tracker is None:
            return nullcontext()
        return self._event_tracker.track(event_type, self.run_id)
