"""Daily, monthly and yearly bitcoin summaries derived from HistoricalBitcoinCalculations.

Refreshed after a run for every date that received a new calculation, so the
summary tables never lag the per-period rows they aggregate.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

import config

logger = logging.getLogger(__name__)

_DAILY_MERGE = """
MERGE INTO dbo.BitcoinDailySummaries WITH (HOLDLOCK) AS target
USING (
    SELECT SettlementDate AS SummaryDate, MinerModel,
           SUM(BitcoinMined) AS BitcoinMined, COUNT(*) AS CalculationCount
    FROM dbo.HistoricalBitcoinCalculations
    WHERE SettlementDate = ?
    GROUP BY SettlementDate, MinerModel
) AS source
ON target.SummaryDate = source.SummaryDate AND target.MinerModel = source.MinerModel
WHEN MATCHED THEN
    UPDATE SET BitcoinMined = source.BitcoinMined,
               CalculationCount = source.CalculationCount,
               UpdatedAt = SYSUTCDATETIME()
WHEN NOT MATCHED THEN
    INSERT (SummaryDate, MinerModel, BitcoinMined, CalculationCount, UpdatedAt)
    VALUES (source.SummaryDate, source.MinerModel, source.BitcoinMined,
            source.CalculationCount, SYSUTCDATETIME());
"""

_MONTHLY_MERGE = """
MERGE INTO dbo.BitcoinMonthlySummaries WITH (HOLDLOCK) AS target
USING (
    SELECT ? AS YearMonth, MinerModel, SUM(BitcoinMined) AS BitcoinMined
    FROM dbo.BitcoinDailySummaries
    WHERE SummaryDate >= ? AND SummaryDate < ?
    GROUP BY MinerModel
) AS source
ON target.YearMonth = source.YearMonth AND target.MinerModel = source.MinerModel
WHEN MATCHED THEN
    UPDATE SET BitcoinMined = source.BitcoinMined, UpdatedAt = SYSUTCDATETIME()
WHEN NOT MATCHED THEN
    INSERT (YearMonth, MinerModel, BitcoinMined, UpdatedAt)
    VALUES (source.YearMonth, source.MinerModel, source.BitcoinMined, SYSUTCDATETIME());
"""

_YEARLY_MERGE = """
MERGE INTO dbo.BitcoinYearlySummaries WITH (HOLDLOCK) AS target
USING (
    SELECT ? AS SummaryYear, MinerModel, SUM(BitcoinMined) AS BitcoinMined
    FROM dbo.BitcoinMonthlySummaries
    WHERE LEFT(YearMonth, 4) = ?
    GROUP BY MinerModel
) AS source
ON target.SummaryYear = source.SummaryYear AND target.MinerModel = source.MinerModel
WHEN MATCHED THEN
    UPDATE SET BitcoinMined = source.BitcoinMined, UpdatedAt = SYSUTCDATETIME()
WHEN NOT MATCHED THEN
    INSERT (SummaryYear, MinerModel, BitcoinMined, UpdatedAt)
    VALUES (source.SummaryYear, source.MinerModel, source.BitcoinMined, SYSUTCDATETIME());
"""


def _month_bounds(day: date) -> tuple[date, date]:
    start = day.replace(day=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _default_cursor():
    import connections

    return connections.cursor_for(config.CURTAILMENT_DB)


def refresh_daily_summaries(dates: Iterable[date], cursor_factory=None) -> int:
    """Re-aggregate daily summaries for ``dates``, then their months and years.

    Each level reads the one below it, so the order is days, months, years.

    Returns the number of dates refreshed. Database errors propagate; the
    coordinator logs them without failing the run.
    """
    cursor_factory = cursor_factory or _default_cursor
    days = sorted(set(dates))
    if not days:
        return 0

    months = sorted({_month_bounds(d) for d in days})
    years = sorted({str(d.year) for d in days})
    with cursor_factory() as cur:
        for day in days:
            cur.execute(_DAILY_MERGE, day)
        for start, end in months:
            cur.execute(_MONTHLY_MERGE, start.strftime("%Y-%m"), start, end)
        for year in years:
            cur.execute(_YEARLY_MERGE, year, year)

    logger.info("Refreshed daily summaries for %d date(s) across %d month(s) and %d year(s)",
                len(days), len(months), len(years))
    return len(days)
