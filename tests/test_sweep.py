from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest

from chxrt.annotate import p_value_category, relabel_terms, significance_stars, suppression_mask
from chxrt.cohort import Cohort, ch_positive, filter_cohort, received_xrt
from chxrt.errors import FitConvergenceError, SchemaError
from chxrt.features import derive_features
from chxrt.models import Z_95, CovariateSet, fit_term, wald_interval
from chxrt.plots import forest_labels
from chxrt.sweep import sweep_outcome_subgroup, sweep_site_gene
from chxrt.synthetic import SyntheticConfig, make_synthetic_cohort

DEMOGRAPHIC = CovariateSet(
    name="demographic",
    terms=("age_scaled", "gender_cat"),
    reference_levels={"gender_cat": "Male"},
)


def _enriched(n: int = 800, seed: int = 11, **kwargs) -> pd.DataFrame:
    return derive_features(make_synthetic_cohort(SyntheticConfig(n=n, seed=seed, **kwargs)))


def test_covariate_set_validates_terms() -> None:
    DEMOGRAPHIC.validate(["age_scaled", "gender_cat"])
    with pytest.raises(SchemaError):
        DEMOGRAPHIC.validate(["age_scaled"])
    bad_ref = CovariateSet(name="x", terms=("age_scaled",), reference_levels={"race_cat": "White"})
    with pytest.raises(SchemaError):
        bad_ref.validate(["age_scaled", "race_cat"])


def test_sweep_produces_one_row_per_cell() -> None:
    cohort = filter_cohort(_enriched(), received_xrt, name="xrt")
    sites = ["pelvis", "abdomen", "breast"]
    genes = ["DNMT3A", "PPM1D"]
    result = sweep_site_gene(cohort, sites=sites, genes=genes, covariates=DEMOGRAPHIC)
    assert len(result.rows) == len(sites) * len(genes)
    assert result.failures == ()
    frame = result.to_frame()
    assert set(zip(frame["axis1"], frame["axis2"])) == {(s, g) for s in sites for g in genes}
    assert (frame["subgroup"] == "xrt").all()
    assert (frame["term"] == frame["axis1"].map(lambda s: f"eqd_3{s}_100")).all()
    assert np.allclose(frame["estimate"], np.exp(frame["coef"]))


def test_failed_cells_are_reported_not_dropped() -> None:
    cohort = filter_cohort(_enriched(), received_xrt, name="xrt")
    frame = cohort.frame.assign(JAK2=0.0)
    cohort = Cohort(name=cohort.name, frame=frame, collapse_table=cohort.collapse_table)

    sites = ["pelvis", "abdomen", "breast"]
    result = sweep_site_gene(cohort, sites=sites, genes=["DNMT3A", "JAK2"], covariates=DEMOGRAPHIC)
    assert len(result.rows) == 3
    assert len(result.failures) == 3
    assert result.n_cells == 6
    failed = result.failures_frame()
    assert set(failed["axis2"]) == {"JAK2"}
    assert set(failed["axis1"]) == set(sites)
    assert failed["reason"].str.contains("constant").all()
    assert (failed["family"] == "logistic").all()
    assert (failed["support"] == 0).all()

    marked = result.to_frame(include_failures=True)
    assert len(marked) == result.n_cells
    assert set(marked.loc[marked["status"] == "failed", "axis2"]) == {"JAK2"}
    assert marked.loc[marked["status"] == "failed", "estimate"].isna().all()
    assert (marked.loc[marked["status"] == "fitted", "reason"] == "").all()


def test_fit_term_raises_on_unusable_cell() -> None:
    df = _enriched(n=200).assign(TP53=0.0)
    with pytest.raises(FitConvergenceError) as exc:
        fit_term(df, outcome="TP53", exposure="eqd_3pelvis_100", covariates=DEMOGRAPHIC, cell=("pelvis", "TP53"))
    assert exc.value.cell == ("pelvis", "TP53")


def test_complete_case_is_per_fit() -> None:
    df = _enriched(n=600)
    df.loc[df.index[:50], "age_scaled"] = np.nan
    with_age = fit_term(df, outcome="DNMT3A", exposure="eqd_3pelvis_100", covariates=DEMOGRAPHIC)
    gender_only = CovariateSet(name="g", terms=("gender_cat",))
    without_age = fit_term(df, outcome="DNMT3A", exposure="eqd_3pelvis_100", covariates=gender_only)
    measured = df["DNMT3A"].notna() & df["eqd_3pelvis_100"].notna()
    assert without_age.n_obs == int(measured.sum())
    assert with_age.n_obs == int((measured & df["age_scaled"].notna()).sum())


def test_zero_support_survives_relabeling() -> None:
    df = _enriched(n=600)
    df["eqd_3brain_100"] = np.where(df["DNMT3A"] == 1, 0.0, df["eqd_3brain_100"])
    cohort = Cohort(name="all", frame=df)
    result = sweep_site_gene(
        cohort,
        sites=["brain", "pelvis"],
        genes=["DNMT3A"],
        covariates=DEMOGRAPHIC,
        outcome="any_chemo",
    )
    frame = result.to_frame()
    brain = frame[frame["axis1"] == "brain"].iloc[0]
    assert brain["support"] == 0
    assert brain["outcome"] == "any_chemo"

    labeled = relabel_terms(frame)
    assert labeled["support"].tolist() == frame["support"].tolist()
    assert labeled["estimate"].tolist() == frame["estimate"].tolist()
    assert labeled["axis1"].tolist() == frame["axis1"].tolist()
    assert labeled.loc[labeled["axis1"] == "brain", "term_label"].iloc[0] == "Brain"
    assert suppression_mask(labeled).tolist() == (frame["support"] == 0).tolist()


def test_injected_association_is_recovered() -> None:
    df = _enriched(n=600, seed=3, effect_site="pelvis", effect_gene="PPM1D")
    result = sweep_site_gene(Cohort(name="all", frame=df), sites=["pelvis"], genes=["PPM1D"], covariates=DEMOGRAPHIC)
    (row,) = result.rows
    assert row.coef > 0
    assert row.estimate > 1
    assert row.conf_low > 1
    assert row.p_value < 0.05
    assert row.support > 0
    assert np.isclose(row.conf_low, np.exp(row.coef - Z_95 * row.std_err))
    assert np.isclose(row.conf_high, np.exp(row.coef + Z_95 * row.std_err))


def test_unrelated_pair_false_positive_rate() -> None:
    significant = 0
    trials = 20
    for seed in range(trials):
        df = _enriched(n=400, seed=100 + seed)
        result = sweep_site_gene(
            Cohort(name="all", frame=df), sites=["abdomen"], genes=["DNMT3A"], covariates=DEMOGRAPHIC
        )
        significant += sum(r.p_value < 0.05 for r in result.rows)
    assert significant <= 4


def test_outcome_by_subgroup_sweep() -> None:
    df = _enriched(n=800)
    cohorts = [Cohort(name="all", frame=df), filter_cohort(df, received_xrt, name="xrt")]
    result = sweep_outcome_subgroup(
        cohorts,
        outcomes=["any_ch", "dta_ch"],
        exposure="any_chemo",
        covariates=DEMOGRAPHIC,
    )
    frame = result.to_frame()
    assert len(frame) == 4
    assert set(zip(frame["outcome"], frame["subgroup"])) == {
        ("any_ch", "all"),
        ("any_ch", "xrt"),
        ("dta_ch", "all"),
        ("dta_ch", "xrt"),
    }


def test_linear_sweep_reports_raw_coefficient() -> None:
    df = _enriched(n=800)
    ch = filter_cohort(df, ch_positive, name="ch_positive")
    result = sweep_outcome_subgroup(
        [ch],
        outcomes=["max_vaf"],
        exposure="eqd_3total_100",
        covariates=DEMOGRAPHIC,
        family="linear",
    )
    (row,) = result.rows
    assert row.family == "linear"
    assert row.estimate == row.coef
    assert row.conf_low < row.coef < row.conf_high
    assert np.isclose(row.conf_low, row.coef - Z_95 * row.std_err)
    assert np.isclose(row.conf_high, row.coef + Z_95 * row.std_err)
    assert row.n_events is None


@pytest.mark.parametrize(
    "p,stars,category",
    [
        (0.0005, "***", "< 0.05"),
        (0.001, "**", "< 0.05"),
        (0.009, "**", "< 0.05"),
        (0.01, "*", "< 0.05"),
        (0.05, "", "0.05–0.2"),
        (0.19, "", "0.05–0.2"),
        (0.2, "", "> 0.2"),
        (1.0, "", "> 0.2"),
    ],
)
def test_p_value_annotations(p: float, stars: str, category: str) -> None:
    assert significance_stars(p) == stars
    assert p_value_category(p) == category


def test_fit_term_reports_non_convergence() -> None:
    df = _enriched(n=400)
    with pytest.raises(FitConvergenceError) as exc:
        fit_term(
            df,
            outcome="DNMT3A",
            exposure="eqd_3pelvis_100",
            covariates=DEMOGRAPHIC,
            cell=("pelvis", "DNMT3A"),
            maxiter=1,
        )
    assert exc.value.cell == ("pelvis", "DNMT3A")
    assert exc.value.reason == "IRLS did not converge within 1 iterations"


def test_non_converged_cells_are_listed_as_failures() -> None:
    df = _enriched(n=400)
    result = sweep_site_gene(
        Cohort(name="all", frame=df),
        sites=["pelvis", "abdomen"],
        genes=["DNMT3A"],
        covariates=DEMOGRAPHIC,
        maxiter=1,
    )
    assert result.rows == ()
    assert result.n_cells == 2
    failed = result.failures_frame()
    assert set(zip(failed["axis1"], failed["axis2"])) == {("pelvis", "DNMT3A"), ("abdomen", "DNMT3A")}
    assert (failed["reason"] == "IRLS did not converge within 1 iterations").all()
    assert (failed["term"] == failed["axis1"].map(lambda s: f"eqd_3{s}_100")).all()


def test_wald_interval_overflow_is_infinite_without_warning() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        lo, hi = wald_interval(0.0, 1000.0, "logistic")
    assert lo == 0.0
    assert hi == float("inf")
    assert wald_interval(0.5, 0.1, "linear") == pytest.approx((0.5 - Z_95 * 0.1, 0.5 + Z_95 * 0.1))


def test_forest_labels_name_the_subgroup_when_rows_span_several() -> None:
    frame = pd.DataFrame(
        {
            "axis1": ["any_ch", "any_ch"],
            "subgroup": ["all", "xrt"],
            "p_value": [0.5, 0.004],
            "support": [10, 10],
        }
    )
    assert forest_labels(relabel_terms(frame)) == ["CH (all)", "CH (xrt) **"]
    assert forest_labels(relabel_terms(frame.iloc[:1])) == ["CH"]
