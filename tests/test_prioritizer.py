from datetime import date

import pytest

from reconcile.models import Gap, Key, MinerModel
from reconcile.prioritizer import build_work_items, group_by_key, order_gaps

D = date(2025, 3, 28)


def _gap(period, farm, model=MinerModel.S9, weight=1.0, day=D):
    return Gap(Key(day, period, farm), model, weight=weight)


def test_higher_weight_first():
    a = _gap(1, "A", weight=10)
    b = _gap(2, "B", weight=5)
    c = _gap(3, "C", weight=20)
    assert order_gaps([a, b, c]) == [c, a, b]


def test_ties_break_on_newer_date_then_period_farm_model():
    older = _gap(1, "A", day=date(2025, 3, 27))
    newer_p2 = _gap(2, "A")
    newer_p1_b = _gap(1, "B")
    newer_p1_a_s9 = _gap(1, "A", MinerModel.S9)
    newer_p1_a_m20 = _gap(1, "A", MinerModel.M20S)
    ordered = order_gaps([older, newer_p2, newer_p1_b, newer_p1_a_s9, newer_p1_a_m20])
    assert ordered == [newer_p1_a_m20, newer_p1_a_s9, newer_p1_b, newer_p2, older]


def test_order_is_deterministic():
    gaps = [_gap(p, f, m, weight=p % 3) for p in (1, 2, 3) for f in ("A", "B") for m in MinerModel]
    assert order_gaps(gaps) == order_gaps(list(reversed(gaps)))


def _key_gaps(period, farm, weight):
    return [_gap(period, farm, m, weight=weight) for m in MinerModel]


def test_key_models_never_split_across_items():
    ordered = order_gaps(_key_gaps(1, "A", 10) + _key_gaps(2, "B", 5))
    items = build_work_items(ordered, batch_size=4)
    assert [len(i) for i in items] == [3, 3]
    for item in items:
        assert len({g.key for g in item.gaps}) == 1


def test_batches_fill_up_to_batch_size():
    ordered = order_gaps(_key_gaps(1, "A", 10) + _key_gaps(2, "B", 5) + _key_gaps(3, "C", 1))
    items = build_work_items(ordered, batch_size=6)
    assert [len(i) for i in items] == [6, 3]
    assert [i.item_id for i in items] == [1, 2]


def test_oversized_key_group_gets_its_own_item():
    ordered = order_gaps(_key_gaps(1, "A", 10) + [_gap(2, "B", weight=5)])
    items = build_work_items(ordered, batch_size=2)
    assert [len(i) for i in items] == [3, 1]


def test_group_by_key_keeps_first_position():
    a1 = _gap(1, "A", MinerModel.S9, weight=10)
    b = _gap(2, "B", weight=7)
    a2 = _gap(1, "A", MinerModel.M20S, weight=3)
    groups = group_by_key([a1, b, a2])
    assert groups == [[a1, a2], [b]]


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        build_work_items([], batch_size=0)
