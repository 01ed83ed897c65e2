"""Network difficulty per settlement date, cached for the life of a run."""

from __future__ import annotations

import logging
import math
import threading
from datetime import date

import config
from extract import cx_read_sql_safe

logger = logging.getLogger(__name__)


def _read_difficulty(day: date) -> float | None:
    """Latest difficulty published on or before ``day`` (None if none)."""
    import connections

    query = (
        "SELECT TOP 1 Difficulty FROM dbo.BitcoinDifficulty "
        f"WHERE EffectiveDate <= '{day.isoformat()}' "
        "ORDER BY EffectiveDate DESC"
    )
    df = cx_read_sql_safe(
        conn=connections.curtailment_connectorx_uri(),
        query=query,
        context=f"difficulty {day.isoformat()}",
    )
    if df.is_empty():
        return None
    return df.item(0, 0)


class DifficultyLookup:
    """Callable ``(date) -> difficulty``.

    Falls back to config.DEFAULT_DIFFICULTY (with a warning, once per date)
    when nothing usable has been published. Read errors propagate so the
    calling gap is retried.
    """

    def __init__(self, fetch=None, default: float | None = None) -> None:
        self._fetch = fetch or _read_difficulty
        self._default = config.DEFAULT_DIFFICULTY if default is None else default
        self._cache: dict[date, float] = {}
        self._lock = threading.Lock()

    def __call__(self, day: date) -> float:
        with self._lock:
            if day in self._cache:
                return self._cache[day]

        value = self._fetch(day)
        try:
            difficulty = float(value) if value is not None else None
        except (TypeError, ValueError):
            difficulty = None
        if difficulty is None or not math.isfinite(difficulty) or difficulty <= 0:
            logger.warning(
                "No difficulty published for %s (got %r) — using default %.0f",
                day, value, self._default,
            )
            difficulty = self._default

        with self._lock:
            return self._cache.setdefault(day, difficulty)
