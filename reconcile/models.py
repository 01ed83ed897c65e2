"""Reconciliation data model: keys, gaps, work items, results, checkpoints."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum

import config
from reconcile.errors import InvalidScope


class MinerModel(str, Enum):
    """Derived-computation variants required per Key."""

    S19J_PRO = "S19J_PRO"
    S9 = "S9"
    M20S = "M20S"


def parse_models(names: list[str]) -> tuple[MinerModel, ...]:
    """Resolve model names (case-insensitive) into a de-duplicated, ordered tuple."""
    models: list[MinerModel] = []
    for name in names:
        try:
            model = MinerModel(name.strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown miner model: {name}. Available: {[m.value for m in MinerModel]}"
            ) from None
        if model not in models:
            models.append(model)
    if not models:
        raise ValueError("At least one miner model is required")
    return tuple(models)


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise InvalidScope(f"Cannot parse date: {value!r} (expected YYYY-MM-DD)") from None


@dataclass(frozen=True, order=True)
class Key:
    """One unit of source data. Ordered by (date, period, farm)."""

    settlement_date: date
    settlement_period: int
    farm_id: str

    def __post_init__(self) -> None:
        if not 1 <= self.settlement_period <= config.MAX_PERIODS_PER_DAY:
            raise ValueError(
                f"Settlement period {self.settlement_period} outside "
                f"1..{config.MAX_PERIODS_PER_DAY}"
            )
        if not self.farm_id:
            raise ValueError("farm_id cannot be empty")

    @classmethod
    def parse(cls, text: str) -> Key:
        """Parse the CLI form ``YYYY-MM-DD:PERIOD:FARM_ID``."""
        parts = text.strip().split(":", 2)
        if len(parts) != 3:
            raise InvalidScope(f"Cannot parse key: {text!r} (expected YYYY-MM-DD:PERIOD:FARM_ID)")
        try:
            period = int(parts[1])
        except ValueError:
            raise InvalidScope(f"Invalid settlement period in key: {text!r}") from None
        try:
            return cls(parse_date(parts[0]), period, parts[2])
        except ValueError as e:
            raise InvalidScope(f"Invalid key {text!r}: {e}") from None

    def __str__(self) -> str:
        return f"{self.settlement_date.isoformat()}:{self.settlement_period}:{self.farm_id}"


@dataclass(frozen=True)
class SourceRecord:
    """Aggregated curtailment for one Key (absolute MWh and payment)."""

    key: Key
    volume: float
    payment: float = 0.0
    fingerprint: str = ""

    @property
    def weight(self) -> float:
        return abs(self.volume)


@dataclass(frozen=True)
class Gap:
    """A (Key, Model) pair missing or stale in the derived dataset.

    Identity is (key, model). Weight and fingerprint describe the source record
    as observed when the gap was detected.
    """

    key: Key
    model: MinerModel
    weight: float = field(default=0.0, compare=False)
    fingerprint: str | None = field(default=None, compare=False)

    @property
    def gap_id(self) -> str:
        return (
            f"{self.key.settlement_date.isoformat()}|{self.key.settlement_period}"
            f"|{self.key.farm_id}|{self.model.value}"
        )


class WorkItemStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    SUCCEEDED = "SUCCEEDED"
    PARTIALLY_FAILED = "PARTIALLY_FAILED"
    FAILED = "FAILED"


@dataclass
class WorkItem:
    """A batch of gaps assigned to exactly one worker at a time."""

    item_id: int
    gaps: tuple[Gap, ...]
    parent_id: int | None = None
    status: WorkItemStatus = WorkItemStatus.PENDING

    def __len__(self) -> int:
        return len(self.gaps)


@dataclass(frozen=True)
class GapOutcome:
    """Ok(value) when error is None, otherwise Err(error)."""

    gap: Gap
    value: float | None = None
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, gap: Gap, value: float) -> GapOutcome:
        return cls(gap=gap, value=value)

    @classmethod
    def failure(cls, gap: Gap, error: str, retryable: bool) -> GapOutcome:
        return cls(gap=gap, error=error or "unknown error", retryable=retryable)


@dataclass(frozen=True)
class WorkItemResult:
    """Worker reply: one outcome per processed gap, in input order.

    ``returned`` holds gaps left unprocessed because the run was cancelled.
    """

    item_id: int
    worker_id: int
    outcomes: tuple[GapOutcome, ...]
    returned: tuple[Gap, ...] = ()

    @property
    def status(self) -> WorkItemStatus:
        if not self.outcomes:
            return WorkItemStatus.PENDING
        succeeded = sum(1 for o in self.outcomes if o.ok)
        if succeeded == len(self.outcomes) and not self.returned:
            return WorkItemStatus.SUCCEEDED
        if succeeded == 0:
            return WorkItemStatus.FAILED
        return WorkItemStatus.PARTIALLY_FAILED


@dataclass(frozen=True)
class Scope:
    """Either an inclusive date range or an explicit list of keys."""

    start: date | None = None
    end: date | None = None
    keys: tuple[Key, ...] = ()

    @classmethod
    def date_range(cls, start: date, end: date) -> Scope:
        if start > end:
            raise InvalidScope(f"Scope start {start} is after end {end}")
        return cls(start=start, end=end)

    @classmethod
    def for_keys(cls, keys) -> Scope:
        unique = tuple(sorted(set(keys)))
        if not unique:
            raise InvalidScope("Explicit key scope cannot be empty")
        return cls(keys=unique)

    @classmethod
    def parse(cls, text: str) -> Scope:
        """Parse ``DATE``, ``DATE..DATE`` or ``DATE:PERIOD:FARM[,DATE:PERIOD:FARM...]``."""
        text = (text or "").strip()
        if not text:
            raise InvalidScope("Scope cannot be empty")
        if ".." in text:
            start_text, end_text = text.split("..", 1)
            return cls.date_range(parse_date(start_text), parse_date(end_text))
        if ":" in text:
            return cls.for_keys(Key.parse(part) for part in text.split(",") if part.strip())
        day = parse_date(text)
        return cls.date_range(day, day)

    @property
    def is_range(self) -> bool:
        return not self.keys

    def dates(self) -> list[date]:
        if self.keys:
            return sorted({k.settlement_date for k in self.keys})
        days = []
        current = self.start
        while current <= self.end:
            days.append(current)
            current += timedelta(days=1)
        return days

    def contains(self, key: Key) -> bool:
        if self.keys:
            return key in self.keys
        return self.start <= key.settlement_date <= self.end

    @property
    def label(self) -> str:
        if self.is_range:
            if self.start == self.end:
                return self.start.isoformat()
            return f"{self.start.isoformat()}..{self.end.isoformat()}"
        digest = hashlib.sha256(
            ",".join(str(k) for k in self.keys).encode("utf-8")
        ).hexdigest()[:12]
        return f"keys-{digest}"

    def to_dict(self) -> dict:
        if self.is_range:
            return {"start": self.start.isoformat(), "end": self.end.isoformat()}
        return {"keys": [str(k) for k in self.keys]}

    @classmethod
    def from_dict(cls, data: dict) -> Scope:
        if "keys" in data:
            return cls.for_keys(Key.parse(k) for k in data["keys"])
        return cls.date_range(parse_date(data["start"]), parse_date(data["end"]))

    def __str__(self) -> str:
        if self.is_range:
            return f"{self.start}..{self.end}"
        return f"{len(self.keys)} explicit keys"


class RunState(str, Enum):
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class RunCheckpoint:
    """Durable snapshot of a reconciliation run.

    ``completed`` maps gap id -> source fingerprint at completion time;
    ``failed`` maps gap id -> {"reason", "fingerprint"}. Together with
    ``pending`` they partition the run's full gap set.
    """

    run_id: str
    scope: dict
    models: list[str]
    status: str = "running"
    completed: dict[str, str | None] = field(default_factory=dict)
    failed: dict[str, dict] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    processed: int = 0
    succeeded: int = 0
    failed_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    finalized_at: str | None = None

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @property
    def total_gaps(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.pending)

    @property
    def percent_complete(self) -> float:
        total = self.total_gaps
        if total == 0:
            return 100.0
        return (len(self.completed) + len(self.failed)) / total * 100

    def validate(self) -> None:
        """Raise ValueError if a gap id appears in more than one partition."""
        completed = set(self.completed)
        failed = set(self.failed)
        pending = set(self.pending)
        overlap = (completed & failed) | (completed & pending) | (failed & pending)
        if overlap:
            raise ValueError(
                f"Checkpoint {self.run_id} has {len(overlap)} gap(s) in more than "
                f"one state, e.g. {sorted(overlap)[:3]}"
            )
        if len(pending) != len(self.pending):
            raise ValueError(f"Checkpoint {self.run_id} has duplicate pending gap ids")

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "scope": self.scope,
            "models": list(self.models),
            "status": self.status,
            "completed": dict(sorted(self.completed.items())),
            "failed": dict(sorted(self.failed.items())),
            "pending": sorted(self.pending),
            "counters": {
                "processed": self.processed,
                "succeeded": self.succeeded,
                "failed": self.failed_count,
            },
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finalized_at": self.finalized_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RunCheckpoint:
        counters = data.get("counters", {})
        return cls(
            run_id=data["run_id"],
            scope=dict(data["scope"]),
            models=list(data.get("models", [])),
            status=data.get("status", "running"),
            completed=dict(data.get("completed", {})),
            failed=dict(data.get("failed", {})),
            pending=list(data.get("pending", [])),
            processed=int(counters.get("processed", 0)),
            succeeded=int(counters.get("succeeded", 0)),
            failed_count=int(counters.get("failed", 0)),
            created_at=data.get("created_at") or utc_now_iso(),
            updated_at=data.get("updated_at") or utc_now_iso(),
            finalized_at=data.get("finalized_at"),
        )


@dataclass
class RunSummary:
    """Final outcome of a run, rendered by the reporter."""

    run_id: str
    state: RunState
    total_gaps: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    work_items: int = 0
    elapsed_seconds: float = 0.0
    failures: list[tuple[str, str]] = field(default_factory=list)
    error: str | None = None
    refreshed_dates: list[date] = field(default_factory=list)
