"""Derived dataset reader/writer: Curtailment.dbo.HistoricalBitcoinCalculations.

One row per (SettlementDate, SettlementPeriod, FarmId, MinerModel) holding the
computed BitcoinMined, the difficulty used and the SourceFingerprint of the
curtailment record it was computed from.

Reads are per settlement date (ConnectorX -> polars) and held in a bounded
DayCache; upserts go through pyodbc MERGE on the calling worker's pooled
connection and update a cached day once the statement succeeds.
"""

from __future__ import annotations

import logging
import threading
from datetime import date

import polars as pl

import config
from datasets.day_cache import DayCache
from extract import cx_read_sql_safe, is_non_retryable_error
from reconcile.errors import TerminalGapError, TransientGapError
from reconcile.models import Key, MinerModel

logger = logging.getLogger(__name__)

_MERGE_SQL = """
MERGE INTO dbo.HistoricalBitcoinCalculations WITH (HOLDLOCK) AS target
USING (
    SELECT ? AS SettlementDate, ? AS SettlementPeriod, ? AS FarmId, ? AS MinerModel,
           ? AS BitcoinMined, ? AS Difficulty, ? AS SourceFingerprint
) AS source
ON  target.SettlementDate = source.SettlementDate
AND target.SettlementPeriod = source.SettlementPeriod
AND target.FarmId = source.FarmId
AND target.MinerModel = source.MinerModel
WHEN MATCHED THEN
    UPDATE SET BitcoinMined = source.BitcoinMined,
               Difficulty = source.Difficulty,
               SourceFingerprint = source.SourceFingerprint,
               CalculatedAt = SYSUTCDATETIME()
WHEN NOT MATCHED THEN
    INSERT (SettlementDate, SettlementPeriod, FarmId, MinerModel,
            BitcoinMined, Difficulty, SourceFingerprint, CalculatedAt)
    VALUES (source.SettlementDate, source.SettlementPeriod, source.FarmId, source.MinerModel,
            source.BitcoinMined, source.Difficulty, source.SourceFingerprint, SYSUTCDATETIME());
"""


def _read_day(day: date) -> pl.DataFrame:
    import connections

    query = (
        "SELECT SettlementDate, SettlementPeriod, FarmId, MinerModel, SourceFingerprint "
        "FROM dbo.HistoricalBitcoinCalculations "
        f"WHERE SettlementDate = '{day.isoformat()}'"
    )
    return cx_read_sql_safe(
        conn=connections.curtailment_connectorx_uri(),
        query=query,
        context=f"bitcoin calculations {day.isoformat()}",
    )


def _default_cursor():
    import connections

    return connections.cursor_for(config.CURTAILMENT_DB)


def classify_db_error(error: Exception, context: str) -> Exception:
    """Wrap a database error as TerminalGapError or TransientGapError."""
    message = f"{context}: {type(error).__name__}: {error}"
    if is_non_retryable_error(str(error).lower(), type(error).__name__):
        return TerminalGapError(message)
    return TransientGapError(message)


class BitcoinCalculationStore:
    """Staleness checks and idempotent upserts against the derived table.

    Args:
        source: Source reader; its current fingerprint decides staleness.
        fetch_day: ``(date) -> pl.DataFrame`` with SettlementDate,
            SettlementPeriod, FarmId, MinerModel, SourceFingerprint.
        cursor_factory: Zero-arg callable returning a cursor context manager.
        max_days: Days kept in memory (default config.DAY_CACHE_MAX_DAYS).
    """

    def __init__(self, source, fetch_day=None, cursor_factory=None,
                 max_days: int | None = None) -> None:
        self._source = source
        self._fetch_day = fetch_day or _read_day
        self._cursor_factory = cursor_factory or _default_cursor
        # day -> key -> model -> stored source fingerprint (None for legacy rows)
        self._cache = DayCache(self._load_day, max_days, name="bitcoin calculations")
        self._lock = threading.Lock()

    def _rows_for(self, day: date) -> dict[Key, dict[MinerModel, str | None]]:
        return self._cache.get(day)

    def _load_day(self, day: date) -> dict[Key, dict[MinerModel, str | None]]:
        df = self._fetch_day(day)
        rows: dict[Key, dict[MinerModel, str | None]] = {}
        unknown_models: set[str] = set()
        for row in df.iter_rows(named=True):
            try:
                model = MinerModel(str(row["MinerModel"]).strip().upper())
            except ValueError:
                unknown_models.add(str(row["MinerModel"]))
                continue
            try:
                key = Key(_as_date(row["SettlementDate"]), int(row["SettlementPeriod"]),
                          str(row["FarmId"]).strip())
            except ValueError as e:
                logger.debug("Skipping calculation row: %s", e)
                continue
            rows.setdefault(key, {})[model] = row.get("SourceFingerprint")

        if unknown_models:
            logger.debug("Ignoring calculations for unconfigured models %s on %s",
                         sorted(unknown_models), day)
        return rows

    def list_derived_models(self, key: Key) -> set[MinerModel]:
        rows = self._rows_for(key.settlement_date)
        with self._lock:
            return set(rows.get(key, {}))

    def is_stale(self, key: Key, model: MinerModel) -> bool:
        """True when the stored source fingerprint differs from the current one.

        Rows written before fingerprints were recorded (NULL) are treated as
        current; only a positive mismatch marks a record stale.
        """
        stored = self._rows_for(key.settlement_date).get(key, {}).get(model)
        if stored is None:
            return False
        record = self._source.get_source_record(key)
        if record is None:
            return False
        return stored != record.fingerprint

    def upsert(
        self,
        key: Key,
        model: MinerModel,
        value: float,
        *,
        source_fingerprint: str | None,
        difficulty: float,
    ) -> None:
        """MERGE one calculation row. Safe to repeat with the same inputs.

        Raises:
            TransientGapError: Deadlock, timeout, dropped connection, unknown errors.
            TerminalGapError: Constraint, conversion or permission errors.
        """
        try:
            with self._cursor_factory() as cur:
                cur.execute(
                    _MERGE_SQL,
                    key.settlement_date, key.settlement_period, key.farm_id, model.value,
                    value, difficulty, source_fingerprint,
                )
        except Exception as e:
            raise classify_db_error(e, f"upsert {key} {model.value}") from e

        day_rows = self._cache.peek(key.settlement_date)
        if day_rows is not None:
            with self._lock:
                day_rows.setdefault(key, {})[model] = source_fingerprint

    def invalidate(self, day: date | None = None) -> None:
        """Drop cached rows for ``day`` (or all days)."""
        self._cache.discard(day)


def _as_date(value) -> date:
    if hasattr(value, "date") and callable(value.date):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
