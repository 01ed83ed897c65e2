from datetime import date

import polars as pl

from datasets.fingerprint import add_fingerprint, fingerprint_values


def test_digest_is_full_sha256_hex():
    fp = fingerprint_values([date(2025, 3, 28), 12, "T_ABRBO-1", 40.0, 1200.5])
    assert len(fp) == 64
    assert fp == fingerprint_values([date(2025, 3, 28), 12, "T_ABRBO-1", 40.0, 1200.5])


def test_float_noise_below_precision_is_ignored():
    assert fingerprint_values([0.1 + 0.2]) == fingerprint_values([0.3])
    assert fingerprint_values([-0.0]) == fingerprint_values([0.0])


def test_value_changes_change_the_fingerprint():
    assert fingerprint_values([40.0]) != fingerprint_values([40.5])


def test_sentinels_are_distinct():
    values = [None, float("nan"), float("inf"), float("-inf"), "None", "nan"]
    assert len({fingerprint_values([v]) for v in values}) == len(values)


def test_separator_prevents_adjacent_values_merging():
    assert fingerprint_values(["ab", "c"]) != fingerprint_values(["a", "bc"])


def test_strings_are_nfc_normalised_and_right_trimmed():
    assert fingerprint_values(["café  "]) == fingerprint_values(["café"])


def test_frame_fingerprints_match_record_fingerprints():
    df = pl.DataFrame({"a": [1, 2], "b": [1.5, None]})
    out = add_fingerprint(df, ["a", "b"])
    assert out["_fingerprint"].to_list() == [
        fingerprint_values([1, 1.5]),
        fingerprint_values([2, None]),
    ]


def test_empty_frame_gets_fingerprint_column():
    out = add_fingerprint(pl.DataFrame({"a": []}, schema={"a": pl.Int64}), ["a"])
    assert "_fingerprint" in out.columns
    assert out.height == 0
