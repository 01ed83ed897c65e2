"""Gap ordering and batching into WorkItems.

Highest-impact, most recent gaps first, so a run interrupted early has still
fixed the records that matter most. A Key's models always travel together in
one WorkItem.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable, Iterator

from reconcile.models import Gap, Key, WorkItem

logger = logging.getLogger(__name__)


def _sort_key(gap: Gap) -> tuple:
    return (
        -gap.weight,
        -gap.key.settlement_date.toordinal(),
        gap.key.settlement_period,
        gap.key.farm_id,
        gap.model.value,
    )


def order_gaps(gaps: Iterable[Gap]) -> list[Gap]:
    """Deterministic total order: weight desc, date desc, then (period, farm, model) asc."""
    return sorted(gaps, key=_sort_key)


def group_by_key(ordered: Iterable[Gap]) -> list[list[Gap]]:
    """Coalesce gaps sharing a Key, keeping each Key at its first position.

    Gaps of one Key normally arrive adjacent (they share the source weight),
    but stale detections can leave a Key's models with different weights.
    """
    groups: dict[Key, list[Gap]] = {}
    for gap in ordered:
        groups.setdefault(gap.key, []).append(gap)
    return list(groups.values())


def build_work_items(
    ordered: Iterable[Gap],
    batch_size: int,
    id_counter: Iterator[int] | None = None,
) -> list[WorkItem]:
    """Pack ordered gaps into WorkItems of at most ``batch_size`` gaps.

    A batch closes when the next Key group would overflow it. A single Key
    group larger than ``batch_size`` becomes its own WorkItem.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if id_counter is None:
        id_counter = itertools.count(1)

    items: list[WorkItem] = []
    current: list[Gap] = []
    for group in group_by_key(ordered):
        if current and len(current) + len(group) > batch_size:
            items.append(WorkItem(item_id=next(id_counter), gaps=tuple(current)))
            current = []
        current.extend(group)
    if current:
        items.append(WorkItem(item_id=next(id_counter), gaps=tuple(current)))

    logger.debug("Built %d work items (batch_size=%d)", len(items), batch_size)
    return items
