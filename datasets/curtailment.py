"""Source dataset reader: Curtailment.dbo.CurtailmentRecords.

One SourceRecord per (SettlementDate, SettlementPeriod, FarmId): absolute
volume and payment summed over the raw curtailment rows (bids can be recorded
as negative volumes). Keys whose summed volume is zero are not source records.

Reads are per settlement date through ConnectorX into polars. Aggregated days
are held in a bounded DayCache; the coordinator releases a day once all of its
gaps are settled.
"""

from __future__ import annotations

import logging
from datetime import date

import polars as pl

import config
from datasets.day_cache import DayCache
from datasets.fingerprint import add_fingerprint
from extract import cx_read_sql_safe
from reconcile.models import Key, Scope, SourceRecord

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["SettlementDate", "SettlementPeriod", "FarmId"]
_FINGERPRINT_COLUMNS = _KEY_COLUMNS + ["Volume", "Payment"]


def _read_day(day: date) -> pl.DataFrame:
    import connections

    query = (
        "SELECT SettlementDate, SettlementPeriod, FarmId, Volume, Payment "
        "FROM dbo.CurtailmentRecords "
        f"WHERE SettlementDate = '{day.isoformat()}'"
    )
    return cx_read_sql_safe(
        conn=connections.curtailment_connectorx_uri(),
        query=query,
        context=f"curtailment {day.isoformat()}",
    )


def aggregate_curtailment(df: pl.DataFrame) -> dict[Key, SourceRecord]:
    """Aggregate raw curtailment rows into one SourceRecord per Key."""
    if df.is_empty():
        return {}

    agg = (
        df.with_columns(
            pl.col("SettlementDate").cast(pl.Date),
            pl.col("SettlementPeriod").cast(pl.Int64),
            pl.col("FarmId").cast(pl.Utf8).str.strip_chars(),
            pl.col("Volume").cast(pl.Float64).abs(),
            pl.col("Payment").cast(pl.Float64).abs().fill_null(0.0),
        )
        .group_by(_KEY_COLUMNS)
        .agg(
            pl.col("Volume").sum(),
            pl.col("Payment").sum(),
        )
        .filter(pl.col("Volume") > 0)
        .sort(_KEY_COLUMNS)
    )
    agg = add_fingerprint(agg, _FINGERPRINT_COLUMNS)

    records: dict[Key, SourceRecord] = {}
    invalid = 0
    for row in agg.iter_rows(named=True):
        try:
            key = Key(row["SettlementDate"], row["SettlementPeriod"], row["FarmId"])
        except ValueError as e:
            invalid += 1
            logger.debug("Skipping curtailment row: %s", e)
            continue
        records[key] = SourceRecord(
            key=key,
            volume=row["Volume"],
            payment=row["Payment"],
            fingerprint=row["_fingerprint"],
        )

    if invalid:
        logger.warning(
            "%d curtailment key(s) skipped: settlement period outside 1..%d or empty farm id",
            invalid, config.MAX_PERIODS_PER_DAY,
        )
    return records


class CurtailmentSource:
    """Lists source keys in a scope and serves aggregated SourceRecords.

    Args:
        fetch_day: ``(date) -> pl.DataFrame`` of raw rows with columns
            SettlementDate, SettlementPeriod, FarmId, Volume, Payment.
            Defaults to a ConnectorX read of dbo.CurtailmentRecords.
        max_days: Days kept in memory (default config.DAY_CACHE_MAX_DAYS).
    """

    def __init__(self, fetch_day=None, max_days: int | None = None) -> None:
        self._fetch_day = fetch_day or _read_day
        self._cache = DayCache(self._load_day, max_days, name="curtailment")

    def _load_day(self, day: date) -> dict[Key, SourceRecord]:
        records = aggregate_curtailment(self._fetch_day(day))
        logger.debug("Loaded %d curtailment key(s) for %s", len(records), day)
        return records

    def _records_for(self, day: date) -> dict[Key, SourceRecord]:
        return self._cache.get(day)

    def list_keys_in_scope(self, scope: Scope) -> set[Key]:
        keys: set[Key] = set()
        for day in scope.dates():
            records = self._records_for(day)
            if scope.is_range:
                keys.update(records)
            else:
                keys.update(k for k in records if scope.contains(k))
        return keys

    def get_source_record(self, key: Key) -> SourceRecord | None:
        return self._records_for(key.settlement_date).get(key)

    def invalidate(self, day: date | None = None) -> None:
        """Drop cached records for ``day`` (or all days)."""
        self._cache.discard(day)
