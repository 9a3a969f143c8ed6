from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import pandas as pd
import yaml

from .annotate import relabel_terms
from .audit import build_run_audit, sweep_record, utc_now_iso, write_run_audit
from .cohort import RARE_CATEGORY_THRESHOLD, Cohort, cohort_counts, filter_cohort, resolve_predicates, summarize_cohorts
from .errors import SchemaError
from .features import derive_features
from .io import read_table, write_table
from .models import CovariateSet
from .plots import plot_forest, plot_site_gene_heatmap
from .schema import ANALYSIS_COLS, GENE_PANEL, SITES, validate_schema
from .sweep import SweepResult, sweep_outcome_subgroup, sweep_site_gene

logger = logging.getLogger(__name__)

FAMILIES = ("logistic", "linear")


@dataclass(frozen=True)
class CohortSpec:
    name: str
    filters: tuple[str, ...]


@dataclass(frozen=True)
class SweepSpec:
    name: str
    kind: str
    covariates: str
    family: str
    cohorts: tuple[str, ...]
    sites: tuple[str, ...] = ()
    genes: tuple[str, ...] = ()
    outcomes: tuple[str, ...] = ()
    outcome: Optional[str] = None
    exposure: Optional[str] = None
    maxiter: int = 100


@dataclass(frozen=True)
class AnalysisConfig:
    covariate_sets: dict[str, CovariateSet]
    cohorts: list[CohortSpec]
    sweeps: list[SweepSpec]
    summary_variables: list[str]
    rare_category_threshold: int = RARE_CATEGORY_THRESHOLD


def _str_list(raw: Any, what: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(x, str) for x in raw):
        raise ValueError(f"{what} must be a list of strings.")
    return list(raw)


def _require_known(values: Sequence[str], known: Sequence[str], what: str) -> None:
    allowed = set(known)
    for v in values:
        if v not in allowed:
            raise SchemaError(v, f"unknown {what}")


def _parse_sweep(raw: dict[str, Any], *, cohort_names: set[str], covariate_sets: dict[str, CovariateSet]) -> SweepSpec:
    name = str(raw["name"])
    kind = str(raw.get("kind", "site_gene"))
    family = str(raw.get("family", "logistic"))
    if family not in FAMILIES:
        raise ValueError(f"Sweep {name}: family must be one of {FAMILIES}, got {family!r}.")
    covariates = str(raw.get("covariates", ""))
    if covariates not in covariate_sets:
        raise ValueError(f"Sweep {name}: unknown covariate set {covariates!r}.")
    maxiter = int(raw.get("maxiter", 100))
    if maxiter < 1:
        raise ValueError(f"Sweep {name}: maxiter must be positive, got {maxiter}.")

    if kind == "site_gene":
        cohorts = [str(raw["cohort"])]
        sites = _str_list(raw.get("sites"), "sites") or list(SITES)
        genes = _str_list(raw.get("genes"), "genes") or list(GENE_PANEL)
        _require_known(sites, SITES, "site")
        _require_known(genes, GENE_PANEL, "gene")
        outcome = raw.get("outcome")
        if outcome is not None:
            _require_known([str(outcome)], ANALYSIS_COLS, "outcome column")
        spec = SweepSpec(
            name=name,
            kind=kind,
            covariates=covariates,
            family=family,
            cohorts=tuple(cohorts),
            sites=tuple(sites),
            genes=tuple(genes),
            outcome=str(outcome) if outcome is not None else None,
            maxiter=maxiter,
        )
    elif kind == "outcome_subgroup":
        cohorts = _str_list(raw.get("cohorts"), "cohorts")
        outcomes = _str_list(raw.get("outcomes"), "outcomes")
        exposure = str(raw["exposure"])
        if not cohorts or not outcomes:
            raise ValueError(f"Sweep {name}: cohorts and outcomes must be non-empty.")
        _require_known(outcomes + [exposure], ANALYSIS_COLS, "analysis column")
        spec = SweepSpec(
            name=name,
            kind=kind,
            covariates=covariates,
            family=family,
            cohorts=tuple(cohorts),
            outcomes=tuple(outcomes),
            exposure=exposure,
            maxiter=maxiter,
        )
    else:
        raise ValueError(f"Sweep {name}: unknown kind {kind!r}.")

    for c in spec.cohorts:
        if c not in cohort_names:
            raise ValueError(f"Sweep {name}: unknown cohort {c!r}.")
    return spec


def load_config(path: str | Path) -> AnalysisConfig:
    """
    Read the YAML analysis config. Covariate terms, cohort predicates, sites,
    genes and outcome columns are checked against the fixed schema here, so
    a bad name fails before any data is loaded.
    """
    path = Path(path)
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Config must be a YAML mapping.")

    sets_raw = raw.get("covariate_sets", {}) or {}
    if not isinstance(sets_raw, dict) or not sets_raw:
        raise ValueError("covariate_sets must be a non-empty mapping.")
    covariate_sets: dict[str, CovariateSet] = {}
    for name, body in sets_raw.items():
        if not isinstance(body, dict):
            raise ValueError(f"Covariate set {name} must be a mapping.")
        refs = body.get("reference_levels", {}) or {}
        if not isinstance(refs, dict):
            raise ValueError(f"Covariate set {name}: reference_levels must be a mapping.")
        cs = CovariateSet(
            name=str(name),
            terms=tuple(_str_list(body.get("terms"), f"covariate_sets.{name}.terms")),
            reference_levels={str(k): str(v) for k, v in refs.items()},
        )
        cs.validate(ANALYSIS_COLS)
        covariate_sets[cs.name] = cs

    cohorts_raw = raw.get("cohorts", [])
    if not isinstance(cohorts_raw, list) or not cohorts_raw:
        raise ValueError("cohorts must be a non-empty list.")
    cohorts: list[CohortSpec] = []
    for c in cohorts_raw:
        if not isinstance(c, dict):
            raise ValueError("Each cohort must be a mapping.")
        filters = _str_list(c.get("filters"), f"cohort {c.get('name')} filters")
        resolve_predicates(filters)
        cohorts.append(CohortSpec(name=str(c["name"]), filters=tuple(filters)))
    cohort_names = {c.name for c in cohorts}
    if len(cohort_names) != len(cohorts):
        raise ValueError("Cohort names must be unique.")

    sweeps_raw = raw.get("sweeps", [])
    if not isinstance(sweeps_raw, list):
        raise ValueError("sweeps must be a list.")
    sweeps: list[SweepSpec] = []
    for s in sweeps_raw:
        if not isinstance(s, dict):
            raise ValueError("Each sweep must be a mapping.")
        sweeps.append(_parse_sweep(s, cohort_names=cohort_names, covariate_sets=covariate_sets))

    summary_variables = _str_list(raw.get("summary_variables"), "summary_variables")
    _require_known(summary_variables, ANALYSIS_COLS, "summary variable")

    return AnalysisConfig(
        covariate_sets=covariate_sets,
        cohorts=cohorts,
        sweeps=sweeps,
        summary_variables=summary_variables,
        rare_category_threshold=int(raw.get("rare_category_threshold", RARE_CATEGORY_THRESHOLD)),
    )


def build_cohorts(enriched: pd.DataFrame, config: AnalysisConfig) -> dict[str, Cohort]:
    out: dict[str, Cohort] = {}
    for spec in config.cohorts:
        out[spec.name] = filter_cohort(
            enriched,
            *resolve_predicates(spec.filters),
            name=spec.name,
            threshold=config.rare_category_threshold,
        )
    return out


def run_sweep(spec: SweepSpec, *, cohorts: dict[str, Cohort], config: AnalysisConfig) -> SweepResult:
    covariates = config.covariate_sets[spec.covariates]
    if spec.kind == "site_gene":
        return sweep_site_gene(
            cohorts[spec.cohorts[0]],
            sites=spec.sites,
            genes=spec.genes,
            covariates=covariates,
            outcome=spec.outcome,
            family=spec.family,  # type: ignore[arg-type]
            name=spec.name,
            maxiter=spec.maxiter,
        )
    return sweep_outcome_subgroup(
        [cohorts[c] for c in spec.cohorts],
        outcomes=spec.outcomes,
        exposure=str(spec.exposure),
        covariates=covariates,
        family=spec.family,  # type: ignore[arg-type]
        name=spec.name,
        maxiter=spec.maxiter,
    )


def run_analysis(
    *,
    input_path: str | Path,
    outdir: str | Path,
    config: AnalysisConfig,
    repo_root: Optional[str | Path] = None,
) -> dict[str, Any]:
    input_path = Path(input_path)
    outdir = Path(outdir)
    figures_dir = outdir / "figures"
    tables_dir = outdir / "tables"
    audit_dir = outdir / "audit"
    for d in (figures_dir, tables_dir, audit_dir):
        d.mkdir(parents=True, exist_ok=True)
    started = utc_now_iso()

    raw = read_table(input_path)
    validate_schema(raw)
    enriched = derive_features(raw)
    write_table(enriched, tables_dir / "analysis_table_used.parquet")

    cohorts = build_cohorts(enriched, config)
    for cs in config.covariate_sets.values():
        for cohort in cohorts.values():
            cs.validate(list(cohort.frame.columns))

    write_table(cohort_counts(list(cohorts.values())), tables_dir / "cohort_counts.csv")
    for name, cohort in cohorts.items():
        if not cohort.collapse_table.empty:
            write_table(cohort.collapse_table, tables_dir / f"tumor_type_collapse_{name}.csv")
    if config.summary_variables:
        summary = summarize_cohorts(list(cohorts.values()), variables=config.summary_variables)
        write_table(summary, tables_dir / "summary_by_cohort.csv")

    sweep_audit: list[dict[str, Any]] = []
    for spec in config.sweeps:
        result = run_sweep(spec, cohorts=cohorts, config=config)
        logger.info("sweep %s: %d of %d cells fitted", spec.name, len(result.rows), result.n_cells)
        results = relabel_terms(result.to_frame(include_failures=True))
        write_table(results, tables_dir / f"results_{spec.name}.csv")
        write_table(result.failures_frame(), tables_dir / f"failures_{spec.name}.csv")

        if spec.kind == "site_gene":
            plot_site_gene_heatmap(
                results,
                sites=spec.sites,
                genes=spec.genes,
                outpath=figures_dir / f"heatmap_{spec.name}.png",
            )
        elif not results.empty:
            plot_forest(results, outpath=figures_dir / f"forest_{spec.name}.png", title=spec.name)

        sweep_audit.append(
            sweep_record(
                result,
                kind=spec.kind,
                family=spec.family,
                covariates=config.covariate_sets[spec.covariates].terms,
            )
        )

    repo_root = Path(repo_root) if repo_root is not None else outdir.parent
    audit = build_run_audit(
        started_utc=started,
        input_path=input_path,
        outdir=outdir,
        config={
            "covariate_sets": {k: list(v.terms) for k, v in config.covariate_sets.items()},
            "cohorts": [asdict(c) for c in config.cohorts],
            "rare_category_threshold": config.rare_category_threshold,
        },
        cohorts={name: {"n_rows": len(c.frame), "n_subjects": c.n_subjects} for name, c in cohorts.items()},
        sweeps=sweep_audit,
        repo_root=repo_root,
    )
    write_run_audit(audit, audit_dir)
    return audit
