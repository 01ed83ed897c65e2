"""Shared fixtures: in-memory source/derived datasets and scripted recompute."""

from __future__ import annotations

import sys
import threading
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datasets.fingerprint import fingerprint_values
from reconcile.checkpoint import FileCheckpointStore
from reconcile.coordinator import ReconcileSettings
from reconcile.errors import TransientGapError
from reconcile.gap_detector import GapDetector
from reconcile.models import Key, MinerModel, SourceRecord
from reconcile.recompute import RecomputeService

ALL_MODELS = (MinerModel.S19J_PRO, MinerModel.S9, MinerModel.M20S)
DAY = date(2025, 3, 28)


def make_record(key: Key, volume: float, payment: float = 0.0) -> SourceRecord:
    fp = fingerprint_values([key.settlement_date, key.settlement_period, key.farm_id,
                             abs(volume), abs(payment)])
    return SourceRecord(key=key, volume=abs(volume), payment=abs(payment), fingerprint=fp)


class InMemorySource:
    def __init__(self, records=()) -> None:
        self.records: dict[Key, SourceRecord] = {r.key: r for r in records}
        self.fail_with: Exception | None = None

    def add(self, key: Key, volume: float, payment: float = 0.0) -> SourceRecord:
        record = make_record(key, volume, payment)
        self.records[key] = record
        return record

    def list_keys_in_scope(self, scope) -> set[Key]:
        if self.fail_with is not None:
            raise self.fail_with
        return {k for k in self.records if scope.contains(k)}

    def get_source_record(self, key: Key) -> SourceRecord | None:
        return self.records.get(key)


class InMemoryDerived:
    def __init__(self, source: InMemorySource) -> None:
        self.source = source
        self.rows: dict[tuple[Key, MinerModel], tuple[float, str | None]] = {}
        self.upserts: list[tuple[Key, MinerModel]] = []
        self._lock = threading.Lock()

    def list_derived_models(self, key: Key) -> set[MinerModel]:
        with self._lock:
            return {m for (k, m) in self.rows if k == key}

    def is_stale(self, key: Key, model: MinerModel) -> bool:
        stored = self.rows[(key, model)][1]
        record = self.source.get_source_record(key)
        return record is not None and stored != record.fingerprint

    def upsert(self, key, model, value, *, source_fingerprint, difficulty) -> None:
        with self._lock:
            self.rows[(key, model)] = (value, source_fingerprint)
            self.upserts.append((key, model))


class ScriptedRecompute:
    """Wraps a recompute callable; fails chosen gap ids a set number of times.

    ``failures[gap_id] = (times, exc_factory)``; ``times=None`` fails forever.
    ``on_call(gap, n)`` runs before each call (n = 1-based call count).
    """

    def __init__(self, inner, failures=None, on_call=None) -> None:
        self._inner = inner
        self._failures = dict(failures or {})
        self._on_call = on_call
        self._lock = threading.Lock()
        self.calls: list[str] = []

    def calls_for(self, gap_id: str) -> int:
        return sum(1 for c in self.calls if c == gap_id)

    def __call__(self, gap):
        with self._lock:
            self.calls.append(gap.gap_id)
            n = len(self.calls)
            failure = self._failures.get(gap.gap_id)
            should_fail = False
            if failure is not None:
                times, factory = failure
                if times is None or self.calls_for(gap.gap_id) <= times:
                    should_fail = True
        if self._on_call is not None:
            self._on_call(gap, n)
        if should_fail:
            raise factory(self.calls_for(gap.gap_id))
        return self._inner(gap)


def transient(attempt: int) -> Exception:
    return TransientGapError(f"deadlock victim (attempt {attempt})")


@pytest.fixture()
def source() -> InMemorySource:
    src = InMemorySource()
    src.add(Key(DAY, 12, "T_ABRBO-1"), 40.0)
    src.add(Key(DAY, 13, "T_BEATO-2"), 25.0)
    return src


@pytest.fixture()
def derived(source) -> InMemoryDerived:
    return InMemoryDerived(source)


@pytest.fixture()
def detector(source, derived) -> GapDetector:
    return GapDetector(source, derived, ALL_MODELS)


@pytest.fixture()
def service(source, derived) -> RecomputeService:
    return RecomputeService(source, derived, lambda day: 1.0e14)


@pytest.fixture()
def store(tmp_path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture()
def fast_settings() -> ReconcileSettings:
    return ReconcileSettings(
        concurrency=2, batch_size=3, max_attempts=3,
        backoff_base=0.001, backoff_max=0.01, report_interval=60.0,
        checkpoint_interval=0.0,
    )
