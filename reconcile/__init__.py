"""Curtailment reconciliation engine.

Detects (Key, Model) gaps between CurtailmentRecords and
HistoricalBitcoinCalculations, recomputes them with a fixed-size worker pool
under one coordinator, and checkpoints progress so runs resume cleanly.

Usage:
    from reconcile import Coordinator, GapDetector, Scope, FileCheckpointStore
    coordinator = Coordinator("2025-03-28", Scope.parse("2025-03-28"),
                              detector, service.recompute, FileCheckpointStore())
    summary = coordinator.run()
"""

# --- Models ---
from reconcile.models import (
    Gap,
    GapOutcome,
    Key,
    MinerModel,
    RunCheckpoint,
    RunState,
    RunSummary,
    Scope,
    SourceRecord,
    WorkItem,
    WorkItemResult,
    WorkItemStatus,
    parse_models,
)

# --- Errors ---
from reconcile.errors import (
    CheckpointIOError,
    DetectionError,
    InvalidScope,
    ReconcileError,
    TerminalGapError,
    TransientGapError,
)

# --- Detection and prioritisation ---
from reconcile.gap_detector import GapDetector
from reconcile.prioritizer import build_work_items, order_gaps

# --- Checkpoints ---
from reconcile.checkpoint import (
    CheckpointWriter,
    FileCheckpointStore,
    SqlCheckpointStore,
    get_checkpoint_store,
)

# --- Execution ---
from reconcile.coordinator import Coordinator, ReconcileSettings
from reconcile.recompute import RecomputeService, block_reward, compute_bitcoin
from reconcile.retry import RetryPolicy
from reconcile.worker import Worker, WorkerPool

# --- Reporting ---
from reconcile.reporter import ProgressReporter, format_status, format_summary

__all__ = [
    "CheckpointIOError",
    "CheckpointWriter",
    "Coordinator",
    "DetectionError",
    "FileCheckpointStore",
    "Gap",
    "GapDetector",
    "GapOutcome",
    "InvalidScope",
    "Key",
    "MinerModel",
    "ProgressReporter",
    "RecomputeService",
    "ReconcileError",
    "ReconcileSettings",
    "RetryPolicy",
    "RunCheckpoint",
    "RunState",
    "RunSummary",
    "Scope",
    "SourceRecord",
    "SqlCheckpointStore",
    "TerminalGapError",
    "TransientGapError",
    "Worker",
    "WorkerPool",
    "WorkItem",
    "WorkItemResult",
    "WorkItemStatus",
    "block_reward",
    "build_work_items",
    "compute_bitcoin",
    "format_status",
    "format_summary",
    "get_checkpoint_store",
    "order_gaps",
    "parse_models",
]
