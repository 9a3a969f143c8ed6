from __future__ import annotations

import itertools
import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from .cohort import Cohort
from .errors import FitConvergenceError
from .models import CovariateSet, Family, FitResult, fit_term
from .schema import normalized_dose_col

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "term",
    "estimate",
    "conf_low",
    "conf_high",
    "p_value",
    "support",
    "outcome",
    "subgroup",
    "axis1",
    "axis2",
    "family",
    "coef",
    "std_err",
    "n_obs",
    "n_events",
]
FAILURE_COLUMNS = ["term", "axis1", "axis2", "outcome", "subgroup", "family", "support", "reason"]
FAILED = "failed"
FITTED = "fitted"


@dataclass(frozen=True)
class ResultRow:
    term: str
    estimate: float
    conf_low: float
    conf_high: float
    p_value: float
    support: int
    outcome: str
    subgroup: str
    axis1: str
    axis2: str
    family: str
    coef: float
    std_err: float
    n_obs: int
    n_events: Optional[int]

    @classmethod
    def from_fit(
        cls, fit: FitResult, *, support: int, outcome: str, subgroup: str, axis1: str, axis2: str
    ) -> "ResultRow":
        return cls(
            term=fit.term,
            estimate=fit.estimate,
            conf_low=fit.conf_low,
            conf_high=fit.conf_high,
            p_value=fit.p_value,
            support=int(support),
            outcome=outcome,
            subgroup=subgroup,
            axis1=axis1,
            axis2=axis2,
            family=fit.family,
            coef=fit.coef,
            std_err=fit.std_err,
            n_obs=fit.n_obs,
            n_events=fit.n_events,
        )


@dataclass(frozen=True)
class FailedCell:
    term: str
    axis1: str
    axis2: str
    outcome: str
    subgroup: str
    family: str
    support: int
    reason: str


@dataclass(frozen=True)
class SweepResult:
    name: str
    rows: tuple[ResultRow, ...]
    failures: tuple[FailedCell, ...]

    @property
    def n_cells(self) -> int:
        return len(self.rows) + len(self.failures)

    def to_frame(self, *, include_failures: bool = False) -> pd.DataFrame:
        """
        One row per fitted cell. With `include_failures`, failed cells are
        appended with NaN estimates, `status == "failed"` and their reason,
        so the table alone accounts for every cell of the sweep.
        """
        if not include_failures:
            return pd.DataFrame([asdict(r) for r in self.rows], columns=RESULT_COLUMNS)
        records = [{**asdict(r), "status": FITTED, "reason": ""} for r in self.rows]
        records += [{**asdict(f), "status": FAILED} for f in self.failures]
        return pd.DataFrame(records, columns=RESULT_COLUMNS + ["status", "reason"])

    def failures_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(f) for f in self.failures], columns=FAILURE_COLUMNS)


def _collect(name: str, outcomes: Iterable[ResultRow | FailedCell]) -> SweepResult:
    rows: list[ResultRow] = []
    failures: list[FailedCell] = []
    for item in outcomes:
        if isinstance(item, FailedCell):
            failures.append(item)
        else:
            rows.append(item)
    if failures:
        logger.warning("sweep %s: %d of %d cells failed", name, len(failures), len(rows) + len(failures))
    return SweepResult(name=name, rows=tuple(rows), failures=tuple(failures))


def _positive(s: pd.Series) -> np.ndarray:
    return (pd.to_numeric(s, errors="coerce").fillna(0) > 0).to_numpy(dtype=bool)


def site_gene_support(frame: pd.DataFrame, *, site: str, gene: str) -> int:
    """Subjects with `gene` mutated and a non-zero dose to `site`."""
    return int(np.sum(_positive(frame[gene]) & _positive(frame[normalized_dose_col(site)])))


def _site_gene_cell(
    cohort: Cohort,
    site: str,
    gene: str,
    *,
    covariates: CovariateSet,
    outcome: Optional[str],
    family: Family,
    maxiter: int,
) -> ResultRow | FailedCell:
    y = outcome or gene
    exposure = normalized_dose_col(site)
    support = site_gene_support(cohort.frame, site=site, gene=gene)
    try:
        fit = fit_term(
            cohort.frame,
            outcome=y,
            exposure=exposure,
            covariates=covariates,
            family=family,
            cell=(site, gene),
            maxiter=maxiter,
        )
    except FitConvergenceError as e:
        logger.warning("cohort %s cell %s x %s failed: %s", cohort.name, site, gene, e.reason)
        return FailedCell(
            term=exposure,
            axis1=site,
            axis2=gene,
            outcome=y,
            subgroup=cohort.name,
            family=family,
            support=support,
            reason=e.reason,
        )
    return ResultRow.from_fit(fit, support=support, outcome=y, subgroup=cohort.name, axis1=site, axis2=gene)


def sweep_site_gene(
    cohort: Cohort,
    *,
    sites: Sequence[str],
    genes: Sequence[str],
    covariates: CovariateSet,
    outcome: Optional[str] = None,
    family: Family = "logistic",
    name: str = "site_gene",
    maxiter: int = 100,
) -> SweepResult:
    """
    One regression per (site, gene) cell on `cohort`. The exposure is the
    site's normalized dose; the gene only enters through the dependent
    variable (when `outcome` is None) and the support count, never as a
    covariate. Failed cells are returned in `failures`, not dropped.
    """
    cells = itertools.product(sites, genes)
    return _collect(
        name,
        (
            _site_gene_cell(
                cohort, site, gene, covariates=covariates, outcome=outcome, family=family, maxiter=maxiter
            )
            for site, gene in cells
        ),
    )


def outcome_support(frame: pd.DataFrame, *, outcome: str, exposure: str, family: Family) -> int:
    exposed = _positive(frame[exposure])
    if family == "logistic":
        return int(np.sum(_positive(frame[outcome]) & exposed))
    return int(np.sum(frame[outcome].notna().to_numpy(dtype=bool) & exposed))


def _outcome_cell(
    cohort: Cohort,
    outcome: str,
    *,
    exposure: str,
    covariates: CovariateSet,
    family: Family,
    maxiter: int,
) -> ResultRow | FailedCell:
    support = outcome_support(cohort.frame, outcome=outcome, exposure=exposure, family=family)
    try:
        fit = fit_term(
            cohort.frame,
            outcome=outcome,
            exposure=exposure,
            covariates=covariates,
            family=family,
            cell=(outcome, cohort.name),
            maxiter=maxiter,
        )
    except FitConvergenceError as e:
        logger.warning("outcome %s in subgroup %s failed: %s", outcome, cohort.name, e.reason)
        return FailedCell(
            term=exposure,
            axis1=outcome,
            axis2=cohort.name,
            outcome=outcome,
            subgroup=cohort.name,
            family=family,
            support=support,
            reason=e.reason,
        )
    return ResultRow.from_fit(
        fit, support=support, outcome=outcome, subgroup=cohort.name, axis1=outcome, axis2=cohort.name
    )


def sweep_outcome_subgroup(
    cohorts: Sequence[Cohort],
    *,
    outcomes: Sequence[str],
    exposure: str,
    covariates: CovariateSet,
    family: Family = "logistic",
    name: str = "outcome_subgroup",
    maxiter: int = 100,
) -> SweepResult:
    """One regression of each outcome on `exposure` within each subgroup cohort."""
    cells = itertools.product(outcomes, cohorts)
    return _collect(
        name,
        (
            _outcome_cell(
                cohort, outcome, exposure=exposure, covariates=covariates, family=family, maxiter=maxiter
            )
            for outcome, cohort in cells
        ),
    )
