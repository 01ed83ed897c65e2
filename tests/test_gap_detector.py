import pytest

from conftest import ALL_MODELS, DAY, InMemorySource
from reconcile.errors import DetectionError, InvalidScope
from reconcile.gap_detector import GapDetector
from reconcile.models import Key, MinerModel, Scope

K1 = Key(DAY, 12, "T_ABRBO-1")
K2 = Key(DAY, 13, "T_BEATO-2")


def test_every_missing_model_is_a_gap(detector):
    gaps = detector.detect(Scope.parse("2025-03-28"))
    assert len(gaps) == 6
    assert {g.key for g in gaps} == {K1, K2}
    by_key = {g.gap_id: g for g in gaps}
    assert by_key["2025-03-28|12|T_ABRBO-1|S9"].weight == 40.0


def test_present_and_current_models_are_not_gaps(detector, source, derived):
    fp = source.get_source_record(K1).fingerprint
    derived.upsert(K1, MinerModel.S9, 0.1, source_fingerprint=fp, difficulty=1.0)
    gaps = detector.detect(Scope.parse("2025-03-28"))
    assert len(gaps) == 5
    assert not any(g.key == K1 and g.model == MinerModel.S9 for g in gaps)


def test_stale_derived_record_is_a_gap(detector, source, derived):
    derived.upsert(K1, MinerModel.S9, 0.1, source_fingerprint="old", difficulty=1.0)
    gaps = detector.detect(Scope.parse("2025-03-28"))
    stale = [g for g in gaps if g.key == K1 and g.model == MinerModel.S9]
    assert len(stale) == 1
    assert stale[0].fingerprint == source.get_source_record(K1).fingerprint


def test_only_required_models_are_checked(source, derived):
    detector = GapDetector(source, derived, (MinerModel.S9,))
    gaps = detector.detect(Scope.parse("2025-03-28"))
    assert {g.model for g in gaps} == {MinerModel.S9}
    assert len(gaps) == 2


def test_explicit_key_scope(detector):
    gaps = detector.detect(Scope.parse("2025-03-28:13:T_BEATO-2"))
    assert {g.key for g in gaps} == {K2}


def test_keys_without_source_record_are_skipped(derived):
    class ListsExtraKey(InMemorySource):
        def list_keys_in_scope(self, scope):
            return super().list_keys_in_scope(scope) | {Key(DAY, 30, "GHOST")}

    src = ListsExtraKey()
    src.add(K1, 10.0)
    derived.source = src
    gaps = GapDetector(src, derived, ALL_MODELS).detect(Scope.parse("2025-03-28"))
    assert {g.key for g in gaps} == {K1}


def test_dataset_failure_becomes_detection_error(detector, source):
    source.fail_with = ConnectionError("communication link failure")
    with pytest.raises(DetectionError):
        detector.detect(Scope.parse("2025-03-28"))


def test_invalid_scope_propagates(detector, source):
    source.fail_with = InvalidScope("bad scope")
    with pytest.raises(InvalidScope):
        detector.detect(Scope.parse("2025-03-28"))


def test_detector_requires_models(source, derived):
    with pytest.raises(ValueError):
        GapDetector(source, derived, ())
