"""Recompute + persist one gap: the unit of work executed by workers.

compute_bitcoin() is pure. RecomputeService wires it to the source reader,
the difficulty lookup and the derived-dataset writer, and only returns once
the upsert has succeeded.
"""

from __future__ import annotations

import logging
import math
from datetime import date

import config
from reconcile.errors import TerminalGapError
from reconcile.models import Gap, MinerModel, SourceRecord

logger = logging.getLogger(__name__)

# Block subsidy by halving date (newest first).
_BLOCK_REWARDS = (
    (date(2024, 4, 20), 3.125),
    (date(2020, 5, 11), 6.25),
    (date(2016, 7, 9), 12.5),
    (date(2012, 11, 28), 25.0),
)
_GENESIS_REWARD = 50.0


def block_reward(day: date) -> float:
    """BTC subsidy per block in effect on ``day``."""
    for halving_date, reward in _BLOCK_REWARDS:
        if day >= halving_date:
            return reward
    return _GENESIS_REWARD


def compute_bitcoin(record: SourceRecord, model: MinerModel, difficulty: float) -> float:
    """BTC a fleet of ``model`` miners would have mined with the curtailed energy.

    The curtailed MWh runs one miner for ``kWh / kW`` hours; hashes performed
    over that time, divided by the expected hashes per block
    (``difficulty * 2^32``), times the block subsidy.

    Raises:
        TerminalGapError: Unknown model, non-finite volume or non-positive difficulty.
    """
    spec = config.MINER_SPECS.get(model.value)
    if spec is None:
        raise TerminalGapError(f"No miner specification for model {model.value}")
    if difficulty is None or not math.isfinite(difficulty) or difficulty <= 0:
        raise TerminalGapError(f"Invalid difficulty {difficulty!r} for {record.key}")
    if record.volume is None or not math.isfinite(record.volume):
        raise TerminalGapError(f"Invalid curtailed volume {record.volume!r} for {record.key}")

    energy_kwh = abs(record.volume) * 1000
    power_kw = spec["power_w"] / 1000
    seconds = energy_kwh / power_kw * 3600
    hashes = spec["hashrate_th"] * 1e12 * seconds
    btc = hashes * block_reward(record.key.settlement_date) / (difficulty * 2 ** 32)
    return round(btc, 8)


class RecomputeService:
    """Fetch source record, look up difficulty, compute, upsert.

    Args:
        source: ``get_source_record(key) -> SourceRecord | None``.
        derived: ``upsert(key, model, value, *, source_fingerprint, difficulty)``.
        difficulty_lookup: ``(date) -> float``.
    """

    def __init__(self, source, derived, difficulty_lookup) -> None:
        self._source = source
        self._derived = derived
        self._difficulty = difficulty_lookup

    def recompute(self, gap: Gap) -> float:
        record = self._source.get_source_record(gap.key)
        if record is None:
            raise TerminalGapError(f"Source record for {gap.key} no longer exists")
        difficulty = self._difficulty(gap.key.settlement_date)
        value = compute_bitcoin(record, gap.model, difficulty)
        self._derived.upsert(
            gap.key, gap.model, value,
            source_fingerprint=record.fingerprint,
            difficulty=difficulty,
        )
        logger.debug("Recomputed %s = %.8f BTC (difficulty %.0f)", gap.gap_id, value, difficulty)
        return value

    __call__ = recompute
