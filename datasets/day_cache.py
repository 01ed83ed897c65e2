"""Bounded per-settlement-day cache shared by the dataset readers.

Keeps at most ``max_days`` days, dropping the least recently used one when a
new day is loaded. A dropped day is simply read again on the next miss.
Loads run outside the lock so workers reading different days do not serialise
on the database; if two threads load the same day, the first result wins.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import date

import config

logger = logging.getLogger(__name__)


class DayCache:
    def __init__(self, loader, max_days: int | None = None, name: str = "day cache") -> None:
        self._loader = loader
        self._max_days = max(1, max_days if max_days is not None else config.DAY_CACHE_MAX_DAYS)
        self._name = name
        self._days: OrderedDict[date, object] = OrderedDict()
        self._lock = threading.Lock()
        self.loads = 0

    def __contains__(self, day: date) -> bool:
        with self._lock:
            return day in self._days

    def __len__(self) -> int:
        with self._lock:
            return len(self._days)

    def get(self, day: date):
        with self._lock:
            if day in self._days:
                self._days.move_to_end(day)
                return self._days[day]

        value = self._loader(day)
        with self._lock:
            self.loads += 1
            if day in self._days:
                self._days.move_to_end(day)
                return self._days[day]
            self._days[day] = value
            while len(self._days) > self._max_days:
                evicted, _ = self._days.popitem(last=False)
                logger.debug("%s: evicted %s (max %d days)", self._name, evicted, self._max_days)
            return value

    def peek(self, day: date):
        """Cached value for ``day`` or None, without loading or touching recency."""
        with self._lock:
            return self._days.get(day)

    def discard(self, day: date | None = None) -> None:
        """Drop ``day`` (or every day)."""
        with self._lock:
            if day is None:
                self._days.clear()
            else:
                self._days.pop(day, None)
