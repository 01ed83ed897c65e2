"""Workers and the fixed-size worker pool.

A Worker recomputes the gaps of one WorkItem in input order and converts every
exception into a GapOutcome, so the coordinator only ever receives data. The
pool runs workers on a ThreadPoolExecutor and posts each WorkItemResult onto
the coordinator's inbox queue from the future's done-callback.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from reconcile.errors import TerminalGapError
from reconcile.models import GapOutcome, WorkItem, WorkItemResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerMessage:
    """Inbox message: the result of one WorkItem on one worker."""

    worker_id: int
    item: WorkItem
    result: WorkItemResult


class Worker:
    """Processes WorkItems through a recompute collaborator (``recompute(gap) -> value``)."""

    def __init__(self, worker_id: int, recompute) -> None:
        self.worker_id = worker_id
        self._recompute = recompute

    def process(self, item: WorkItem, cancel_event: threading.Event | None = None) -> WorkItemResult:
        outcomes: list[GapOutcome] = []
        gaps = item.gaps
        for index, gap in enumerate(gaps):
            if cancel_event is not None and cancel_event.is_set():
                returned = tuple(gaps[index:])
                logger.info(
                    "Worker %d: cancellation requested — returning %d unprocessed gap(s) of item %d",
                    self.worker_id, len(returned), item.item_id,
                )
                return WorkItemResult(item.item_id, self.worker_id, tuple(outcomes), returned)
            try:
                value = self._recompute(gap)
            except TerminalGapError as e:
                logger.warning("Worker %d: %s failed permanently: %s", self.worker_id, gap.gap_id, e)
                outcomes.append(GapOutcome.failure(gap, str(e), retryable=False))
            except Exception as e:
                logger.warning(
                    "Worker %d: %s failed (%s): %s",
                    self.worker_id, gap.gap_id, type(e).__name__, e,
                )
                outcomes.append(GapOutcome.failure(gap, str(e) or type(e).__name__, retryable=True))
            else:
                outcomes.append(GapOutcome.success(gap, value))

        return WorkItemResult(item.item_id, self.worker_id, tuple(outcomes))


class WorkerPool:
    """Static pool of ``len(workers)`` threads sharing one cancellation event."""

    def __init__(self, workers: list[Worker], inbox: queue.Queue, cancel_event: threading.Event) -> None:
        if not workers:
            raise ValueError("WorkerPool requires at least one worker")
        self._workers = {w.worker_id: w for w in workers}
        self._inbox = inbox
        self._cancel_event = cancel_event
        self._executor = ThreadPoolExecutor(
            max_workers=len(workers), thread_name_prefix="reconcile-worker",
        )

    @property
    def worker_ids(self) -> list[int]:
        return sorted(self._workers)

    def submit(self, worker_id: int, item: WorkItem) -> Future:
        """Run ``item`` on ``worker_id``; its result arrives on the inbox."""
        worker = self._workers[worker_id]
        future = self._executor.submit(worker.process, item, self._cancel_event)
        future.add_done_callback(lambda f: self._post(worker_id, item, f))
        return future

    def _post(self, worker_id: int, item: WorkItem, future: Future) -> None:
        try:
            result = future.result()
        except Exception as e:
            # Worker crashed outside the per-gap boundary: every gap is a retryable failure.
            logger.exception("Worker %d crashed on item %d", worker_id, item.item_id)
            reason = f"worker crashed: {type(e).__name__}: {e}"
            result = WorkItemResult(
                item.item_id, worker_id,
                tuple(GapOutcome.failure(g, reason, retryable=True) for g in item.gaps),
            )
        self._inbox.put(WorkerMessage(worker_id, item, result))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
