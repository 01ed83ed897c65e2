from contextlib import contextmanager
from datetime import date

import polars as pl
import pytest

from datasets.bitcoin_calculations import BitcoinCalculationStore, classify_db_error
from datasets.curtailment import CurtailmentSource, aggregate_curtailment
from datasets.day_cache import DayCache
from datasets.difficulty import DifficultyLookup
from datasets.summaries import refresh_daily_summaries
from reconcile.errors import TerminalGapError, TransientGapError
from reconcile.models import Key, MinerModel, Scope

D = date(2025, 3, 28)


def _raw(rows):
    return pl.DataFrame(
        rows,
        schema={
            "SettlementDate": pl.Date,
            "SettlementPeriod": pl.Int64,
            "FarmId": pl.Utf8,
            "Volume": pl.Float64,
            "Payment": pl.Float64,
        },
        orient="row",
    )


RAW = [
    (D, 12, "T_ABRBO-1", -30.0, -900.0),
    (D, 12, "T_ABRBO-1", -10.0, -300.0),
    (D, 13, "T_BEATO-2", -25.0, None),
    (D, 14, "T_ZERO-1", 0.0, 0.0),
]


def test_aggregate_sums_absolute_volume_per_key():
    records = aggregate_curtailment(_raw(RAW))
    k1 = Key(D, 12, "T_ABRBO-1")
    assert set(records) == {k1, Key(D, 13, "T_BEATO-2")}
    assert records[k1].volume == 40.0
    assert records[k1].payment == 1200.0
    assert records[Key(D, 13, "T_BEATO-2")].payment == 0.0


def test_aggregate_fingerprint_independent_of_row_order():
    forward = aggregate_curtailment(_raw(RAW))
    backward = aggregate_curtailment(_raw(list(reversed(RAW))))
    assert {k: r.fingerprint for k, r in forward.items()} == {k: r.fingerprint for k, r in backward.items()}


def test_aggregate_skips_out_of_range_periods():
    records = aggregate_curtailment(_raw([(D, 50, "T_X-1", -1.0, 0.0), (D, 1, "T_X-1", -1.0, 0.0)]))
    assert list(records) == [Key(D, 1, "T_X-1")]


def test_source_caches_per_day():
    calls = []

    def fetch(day):
        calls.append(day)
        return _raw([r for r in RAW if r[0] == day])

    source = CurtailmentSource(fetch_day=fetch)
    keys = source.list_keys_in_scope(Scope.parse("2025-03-28"))
    assert len(keys) == 2
    assert source.get_source_record(Key(D, 12, "T_ABRBO-1")).volume == 40.0
    assert source.get_source_record(Key(D, 14, "T_ZERO-1")) is None
    assert calls == [D]


def test_source_explicit_key_scope():
    source = CurtailmentSource(fetch_day=lambda day: _raw(RAW))
    keys = source.list_keys_in_scope(Scope.parse("2025-03-28:13:T_BEATO-2,2025-03-28:14:T_ZERO-1"))
    assert keys == {Key(D, 13, "T_BEATO-2")}


class _FakeCursor:
    def __init__(self, error=None):
        self.error = error
        self.executed = []

    def execute(self, sql, *params):
        if self.error is not None:
            raise self.error
        self.executed.append((sql, params))


def _cursor_factory(cursor):
    @contextmanager
    def factory():
        yield cursor
    return factory


def _derived_frame(rows):
    return pl.DataFrame(
        rows,
        schema={
            "SettlementDate": pl.Date,
            "SettlementPeriod": pl.Int64,
            "FarmId": pl.Utf8,
            "MinerModel": pl.Utf8,
            "SourceFingerprint": pl.Utf8,
        },
        orient="row",
    )


@pytest.fixture()
def curtailment():
    return CurtailmentSource(fetch_day=lambda day: _raw(RAW))


def test_store_lists_models_and_detects_staleness(curtailment):
    key = Key(D, 12, "T_ABRBO-1")
    current = curtailment.get_source_record(key).fingerprint
    frame = _derived_frame([
        (D, 12, "T_ABRBO-1", "S9", current),
        (D, 12, "T_ABRBO-1", "M20S", "outdated"),
        (D, 12, "T_ABRBO-1", "S19J_PRO", None),
        (D, 12, "T_ABRBO-1", "S21", current),
    ])
    store = BitcoinCalculationStore(curtailment, fetch_day=lambda day: frame)
    assert store.list_derived_models(key) == {MinerModel.S9, MinerModel.M20S, MinerModel.S19J_PRO}
    assert not store.is_stale(key, MinerModel.S9)
    assert store.is_stale(key, MinerModel.M20S)
    assert not store.is_stale(key, MinerModel.S19J_PRO)


def test_upsert_updates_cache(curtailment):
    key = Key(D, 13, "T_BEATO-2")
    cursor = _FakeCursor()
    store = BitcoinCalculationStore(curtailment, fetch_day=lambda day: _derived_frame([]),
                                    cursor_factory=_cursor_factory(cursor))
    assert store.list_derived_models(key) == set()
    store.upsert(key, MinerModel.S9, 0.001, source_fingerprint="fp", difficulty=1e14)
    assert store.list_derived_models(key) == {MinerModel.S9}
    assert len(cursor.executed) == 1
    assert cursor.executed[0][1][:4] == (D, 13, "T_BEATO-2", "S9")


@pytest.mark.parametrize("message, expected", [
    ("Transaction was deadlocked on lock resources", TransientGapError),
    ("Communication link failure", TransientGapError),
    ("Cannot insert the value NULL into column 'Difficulty'", TerminalGapError),
    ("Arithmetic overflow error converting float to data type numeric", TerminalGapError),
    ("something unexpected", TransientGapError),
])
def test_upsert_errors_are_classified(curtailment, message, expected):
    cursor = _FakeCursor(error=RuntimeError(message))
    store = BitcoinCalculationStore(curtailment, fetch_day=lambda day: _derived_frame([]),
                                    cursor_factory=_cursor_factory(cursor))
    with pytest.raises(expected):
        store.upsert(Key(D, 12, "T_ABRBO-1"), MinerModel.S9, 1.0,
                     source_fingerprint="fp", difficulty=1e14)


def test_classify_db_error_keeps_context():
    err = classify_db_error(RuntimeError("permission denied"), "upsert X")
    assert isinstance(err, TerminalGapError)
    assert "upsert X" in str(err)


def test_difficulty_lookup_caches_and_falls_back():
    calls = []

    def fetch(day):
        calls.append(day)
        return None if day == date(2025, 1, 1) else 1.2e14

    lookup = DifficultyLookup(fetch=fetch, default=9.9e13)
    assert lookup(D) == 1.2e14
    assert lookup(D) == 1.2e14
    assert lookup(date(2025, 1, 1)) == 9.9e13
    assert calls == [D, date(2025, 1, 1)]


def test_refresh_daily_summaries_covers_days_and_months():
    cursor = _FakeCursor()
    n = refresh_daily_summaries([D, date(2025, 3, 29), D, date(2025, 4, 1)],
                                cursor_factory=_cursor_factory(cursor))
    assert n == 3
    # 3 daily merges + 2 monthly merges (March, April) + 1 yearly merge
    assert len(cursor.executed) == 6
    assert cursor.executed[3][1] == ("2025-03", date(2025, 3, 1), date(2025, 4, 1))
    assert "BitcoinYearlySummaries" in cursor.executed[5][0]
    assert cursor.executed[5][1] == ("2025", "2025")


def test_refresh_covers_every_touched_year():
    cursor = _FakeCursor()
    refresh_daily_summaries([date(2024, 12, 31), date(2025, 1, 1)], cursor_factory=_cursor_factory(cursor))
    yearly = [params for sql, params in cursor.executed if "BitcoinYearlySummaries" in sql]
    assert yearly == [("2024", "2024"), ("2025", "2025")]
    monthly = [params[0] for sql, params in cursor.executed if "BitcoinMonthlySummaries" in sql]
    assert monthly == ["2024-12", "2025-01"]


def test_refresh_with_no_dates_is_a_no_op():
    assert refresh_daily_summaries([], cursor_factory=lambda: pytest.fail("no cursor expected")) == 0


def test_day_cache_evicts_least_recently_used_day():
    loaded = []

    def load(day):
        loaded.append(day)
        return {"day": day}

    days = [date(2025, 3, d) for d in (1, 2, 3)]
    cache = DayCache(load, max_days=2)
    cache.get(days[0])
    cache.get(days[1])
    cache.get(days[0])
    cache.get(days[2])
    assert len(cache) == 2
    assert days[1] not in cache
    assert days[0] in cache
    cache.get(days[1])
    assert loaded == [days[0], days[1], days[2], days[1]]


def test_day_cache_discard():
    cache = DayCache(lambda day: {}, max_days=5)
    cache.get(D)
    cache.discard(D)
    assert D not in cache
    assert cache.peek(D) is None
    cache.get(D)
    cache.discard()
    assert len(cache) == 0


def test_source_memory_is_bounded_and_days_reload():
    calls = []

    def fetch(day):
        calls.append(day)
        return _raw([(day, 1, "T_X-1", -5.0, 0.0)])

    source = CurtailmentSource(fetch_day=fetch, max_days=2)
    keys = source.list_keys_in_scope(Scope.parse("2025-03-01..2025-03-05"))
    assert len(keys) == 5
    assert len(calls) == 5
    assert source.get_source_record(Key(date(2025, 3, 5), 1, "T_X-1")).volume == 5.0
    assert len(calls) == 5
    assert source.get_source_record(Key(date(2025, 3, 1), 1, "T_X-1")).volume == 5.0
    assert calls[-1] == date(2025, 3, 1)


def test_source_invalidate_forces_reload():
    calls = []

    def fetch(day):
        calls.append(day)
        return _raw(RAW)

    source = CurtailmentSource(fetch_day=fetch)
    source.get_source_record(Key(D, 12, "T_ABRBO-1"))
    source.invalidate(D)
    source.get_source_record(Key(D, 12, "T_ABRBO-1"))
    assert calls == [D, D]


def test_store_invalidate_drops_cached_day(curtailment):
    calls = []

    def fetch(day):
        calls.append(day)
        return _derived_frame([])

    store = BitcoinCalculationStore(curtailment, fetch_day=fetch, cursor_factory=_cursor_factory(_FakeCursor()))
    key = Key(D, 12, "T_ABRBO-1")
    store.list_derived_models(key)
    store.invalidate(D)
    store.list_derived_models(key)
    assert calls == [D, D]


def test_upsert_after_eviction_does_not_reload_day(curtailment):
    calls = []

    def fetch(day):
        calls.append(day)
        return _derived_frame([])

    store = BitcoinCalculationStore(curtailment, fetch_day=fetch, cursor_factory=_cursor_factory(_FakeCursor()))
    store.upsert(Key(D, 12, "T_ABRBO-1"), MinerModel.S9, 1.0, source_fingerprint="fp", difficulty=1e14)
    assert calls == []
