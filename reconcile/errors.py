"""Reconciliation error taxonomy.

Run-level errors (InvalidScope, DetectionError, CheckpointIOError) end the run.
Gap-level errors (TransientGapError, TerminalGapError) are raised by the
recompute collaborator and converted to data by the worker; they never cross
the worker/coordinator boundary as exceptions.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for reconciliation errors."""


class InvalidScope(ReconcileError):
    """Malformed scope (e.g. start date after end date). Never retried."""


class DetectionError(ReconcileError):
    """Source or derived dataset unreachable while computing gaps."""


class CheckpointIOError(ReconcileError):
    """Checkpoint store unreachable; no further work may be dispatched."""


class TransientGapError(ReconcileError):
    """Gap failure that may succeed on retry (timeout, deadlock, I/O)."""


class TerminalGapError(ReconcileError):
    """Gap failure retry cannot fix (missing source record, bad input)."""
