from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError

from .errors import FitConvergenceError, SchemaError

Family = Literal["logistic", "linear"]

Z_95 = 1.959963984540054


@dataclass(frozen=True)
class CovariateSet:
    """
    Fixed adjustment set for one analysis. Terms are column names of the
    enriched table; categorical terms are dummy-coded against
    `reference_levels[term]` (or their first level when none is declared).
    """

    name: str
    terms: tuple[str, ...]
    reference_levels: Mapping[str, str] = field(default_factory=dict)

    def validate(self, columns: Sequence[str]) -> None:
        known = set(columns)
        for term in self.terms:
            if term not in known:
                raise SchemaError(term, f"covariate in set {self.name!r} is not an analysis column")
        for term in self.reference_levels:
            if term not in self.terms:
                raise SchemaError(term, f"reference level declared for a term outside set {self.name!r}")


@dataclass(frozen=True)
class FitResult:
    term: str
    family: Family
    coef: float
    std_err: float
    p_value: float
    conf_low: float
    conf_high: float
    n_obs: int
    n_events: Optional[int]

    @property
    def estimate(self) -> float:
        if self.family != "logistic":
            return self.coef
        with np.errstate(over="ignore"):
            return float(np.exp(self.coef))


def wald_interval(coef: float, std_err: float, family: Family) -> tuple[float, float]:
    """
    95% Wald interval on the linear-predictor scale, exponentiated for
    logistic fits. A huge SE on a degenerate cell gives an infinite bound.
    """
    lo, hi = coef - Z_95 * std_err, coef + Z_95 * std_err
    if family == "logistic":
        with np.errstate(over="ignore"):
            lo, hi = np.exp(lo), np.exp(hi)
    return float(lo), float(hi)


def _is_categorical(s: pd.Series) -> bool:
    if pd.api.types.is_bool_dtype(s):
        return False
    return not pd.api.types.is_numeric_dtype(s)


def design_matrix(frame: pd.DataFrame, *, exposure: str, covariates: CovariateSet) -> pd.DataFrame:
    parts = [pd.to_numeric(frame[exposure], errors="coerce").astype(float).rename(exposure)]
    for term in covariates.terms:
        if term == exposure:
            continue
        s = frame[term]
        if not _is_categorical(s):
            parts.append(pd.to_numeric(s, errors="coerce").astype(float).rename(term))
            continue
        if isinstance(s.dtype, pd.CategoricalDtype):
            levels = [str(lv) for lv in s.cat.categories]
        else:
            levels = sorted(s.astype(str).unique().tolist())
        x = s.astype(str)
        ref = covariates.reference_levels.get(term, levels[0] if levels else None)
        for lvl in levels:
            if lvl == ref:
                continue
            dummy = (x == lvl).astype(float)
            if dummy.sum() == 0:
                continue
            parts.append(dummy.rename(f"{term}[{lvl}]"))
    X = pd.concat(parts, axis=1)
    return sm.add_constant(X, has_constant="add")


def fit_term(
    frame: pd.DataFrame,
    *,
    outcome: str,
    exposure: str,
    covariates: CovariateSet,
    family: Family = "logistic",
    cell: Optional[tuple[str, str]] = None,
    maxiter: int = 100,
) -> FitResult:
    """
    Fit `outcome ~ exposure + covariates` on the complete cases of those
    columns and return the exposure coefficient with a 95% Wald interval.
    Logistic intervals are exponentiated from the linear-predictor scale.

    Raises FitConvergenceError when the cell cannot produce a finite estimate:
    no complete cases, constant outcome or exposure, a numerical failure in
    statsmodels, or IRLS stopping at `maxiter` without converging.
    """
    cell = cell or (exposure, outcome)
    cols = list(dict.fromkeys([outcome, exposure, *covariates.terms]))
    for c in cols:
        if c not in frame.columns:
            raise SchemaError(c)

    work = frame.loc[:, cols].dropna()
    if work.empty:
        raise FitConvergenceError(cell, "no complete cases")

    y = pd.to_numeric(work[outcome], errors="coerce").astype(float)
    if y.isna().any():
        raise SchemaError(outcome, "outcome is not numeric")
    if y.nunique() < 2:
        raise FitConvergenceError(cell, "outcome is constant among complete cases")
    if family == "logistic" and not y.isin([0.0, 1.0]).all():
        raise SchemaError(outcome, "logistic outcome must be 0/1")
    if pd.to_numeric(work[exposure], errors="coerce").nunique() < 2:
        raise FitConvergenceError(cell, "exposure has no variation among complete cases")

    X = design_matrix(work, exposure=exposure, covariates=covariates)
    fam = sm.families.Binomial() if family == "logistic" else sm.families.Gaussian()

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            res = sm.GLM(y, X, family=fam).fit(maxiter=maxiter)
    except (PerfectSeparationError, np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
        msg = str(e).strip().replace("\n", " ")
        raise FitConvergenceError(cell, f"{type(e).__name__}: {msg}" if msg else type(e).__name__) from e

    if not getattr(res, "converged", True):
        raise FitConvergenceError(cell, f"IRLS did not converge within {maxiter} iterations")

    coef = float(res.params[exposure])
    se = float(res.bse[exposure])
    p = float(res.pvalues[exposure])
    if not (np.isfinite(coef) and np.isfinite(se) and np.isfinite(p)):
        raise FitConvergenceError(cell, "non-finite coefficient or standard error")

    lo, hi = wald_interval(coef, se, family)
    return FitResult(
        term=exposure,
        family=family,
        coef=coef,
        std_err=se,
        p_value=p,
        conf_low=lo,
        conf_high=hi,
        n_obs=int(res.nobs),
        n_events=int(y.sum()) if family == "logistic" else None,
    )
