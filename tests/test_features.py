from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from chxrt.errors import SchemaError
from chxrt.features import (
    any_of,
    bin_mutation_count,
    bin_pack_years,
    bin_vaf,
    derive_features,
    normalize_doses,
    recode_gender,
    recode_race,
    recode_smoking,
    scale_age,
)
from chxrt.synthetic import SyntheticConfig, make_synthetic_cohort


def test_ddr_flag_treats_unmeasured_genes_as_absent() -> None:
    df = pd.DataFrame(
        {
            "PPM1D": [np.nan, 0, 1, np.nan],
            "TP53": [np.nan, 0, np.nan, 0],
            "ATM": [0, np.nan, 0, "TRUE"],
            "CHEK2": [np.nan, 0, 0, 0],
        }
    )
    assert any_of(df, ["PPM1D", "TP53", "ATM", "CHEK2"]).tolist() == [0, 0, 1, 1]


def test_race_recode() -> None:
    s = pd.Series(["WHITE", "", "UNKNOWN", None, "MISSING/OTHER", "BLACK", "  asian "])
    assert recode_race(s).tolist() == ["White", "Missing", "Missing", "Missing", "Other", "Black", "Asian"]


def test_smoking_and_gender_recode() -> None:
    assert recode_smoking(pd.Series(["Never", "Former", 1, 0, "Unknown", None])).tolist() == [
        "0",
        "1",
        "1",
        "0",
        "Missing",
        "Missing",
    ]
    assert recode_gender(pd.Series(["M", "female", "MALE"])).tolist() == ["Male", "Female", "Male"]
    with pytest.raises(SchemaError):
        recode_gender(pd.Series(["M", "X"]))


def test_pack_year_boundaries_bucket_upward() -> None:
    s = pd.Series([0.0, 0.001, 0.5, 1.0, 1.999, 100.0, 250.0, np.nan])
    out = bin_pack_years(s).astype(str).tolist()
    assert out == [
        "[0, 0.001)",
        "[0.001, 1)",
        "[0.001, 1)",
        "[1, 2)",
        "[1, 2)",
        "[100, Inf]",
        "[100, Inf]",
        "Missing",
    ]


def test_pack_year_levels_follow_observed_population() -> None:
    out = bin_pack_years(pd.Series([1.0, 35.0, 3.0]))
    assert list(out.cat.categories) == ["[1, 2)", "[2, 5)", "[30, 40)"]
    assert out.cat.ordered


def test_rebinning_pack_years_raises() -> None:
    binned = bin_pack_years(pd.Series([0.0, 12.0, 45.0]))
    with pytest.raises(SchemaError):
        bin_pack_years(binned)
    with pytest.raises(SchemaError):
        bin_pack_years(binned.astype(str))
    with pytest.raises(SchemaError):
        bin_pack_years(pd.Series([-1.0]))


def test_vaf_and_mutation_count_bins() -> None:
    vaf = bin_vaf(pd.Series([np.nan, 0.0, 0.05, 0.1, 0.2, 1.0])).astype(str).tolist()
    assert vaf == ["None", "[0, 0.05)", "[0.05, 0.1)", "[0.1, 0.2)", "[0.2, 1]", "[0.2, 1]"]
    counts = bin_mutation_count(pd.Series([0, 1, 2, 7, np.nan])).astype(str).tolist()
    assert counts == ["0", "1", ">=2", ">=2", "0"]


def test_dose_normalization_and_total() -> None:
    df = pd.DataFrame({"eqd_3a": [4500.0, 0.0, np.nan], "eqd_3b": [500.0, 0.0, 2000.0]})
    out = normalize_doses(df, ["eqd_3a", "eqd_3b"])
    assert out["eqd_3a_100"].tolist()[:2] == [45.0, 0.0]
    assert np.isnan(out["eqd_3a_100"].iloc[2])
    assert out["eqd_3total"].tolist() == [5000.0, 0.0, 2000.0]
    assert out["eqd_3total_100"].tolist() == [50.0, 0.0, 20.0]


def test_age_scaling_uses_table_moments() -> None:
    z = scale_age(pd.Series([50.0, 60.0, 70.0]))
    assert z.tolist() == pytest.approx([-1.0, 0.0, 1.0])


def test_derive_features_is_pure_and_complete() -> None:
    raw = make_synthetic_cohort(SyntheticConfig(n=300, seed=5))
    before = raw.copy()
    out = derive_features(raw)
    pd.testing.assert_frame_equal(raw, before)
    assert len(out) == len(raw)

    ddr = out[["PPM1D", "TP53", "ATM", "CHEK2"]].fillna(0).max(axis=1).astype(int)
    assert (out["ddr_ch"] == ddr).all()
    assert ((out["non_ddr_ch"] == 1) == ((out["any_ch"] == 1) & (out["ddr_ch"] == 0))).all()
    assert set(out["race_cat"]) <= {"White", "Black", "Asian", "Other", "Missing"}
    assert set(out["gender_cat"]) == {"Male", "Female"}
    assert np.allclose(out["eqd_3pelvis_100"] * 100, out["eqd_3pelvis"])


def test_derive_features_names_missing_field() -> None:
    raw = make_synthetic_cohort(SyntheticConfig(n=20, seed=1)).drop(columns=["TP53"])
    with pytest.raises(SchemaError) as exc:
        derive_features(raw)
    assert exc.value.field == "TP53"
