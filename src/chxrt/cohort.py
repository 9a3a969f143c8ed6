from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import EmptyCohortError, SchemaError
from .features import OTHER
from .schema import ID_COL

logger = logging.getLogger(__name__)

Predicate = Callable[[pd.DataFrame], pd.Series]

RARE_CATEGORY_THRESHOLD = 50


def _col(df: pd.DataFrame, name: str) -> pd.Series:
    if name not in df.columns:
        raise SchemaError(name)
    return df[name]


def received_xrt(df: pd.DataFrame) -> pd.Series:
    return pd.to_numeric(_col(df, "xrt"), errors="coerce").fillna(0) > 0


def blood_draw_known(df: pd.DataFrame) -> pd.Series:
    return pd.to_numeric(_col(df, "days_to_blood_draw"), errors="coerce").notna()


def ch_positive(df: pd.DataFrame) -> pd.Series:
    return pd.to_numeric(_col(df, "any_ch"), errors="coerce").fillna(0) > 0


def received_chemo(df: pd.DataFrame) -> pd.Series:
    return pd.to_numeric(_col(df, "any_chemo"), errors="coerce").fillna(0) > 0


def complete(columns: Sequence[str]) -> Predicate:
    cols = list(columns)

    def _pred(df: pd.DataFrame) -> pd.Series:
        for c in cols:
            _col(df, c)
        return df[cols].notna().all(axis=1)

    _pred.__name__ = f"complete({','.join(cols)})"
    return _pred


def all_of(*predicates: Predicate) -> Predicate:
    def _pred(df: pd.DataFrame) -> pd.Series:
        mask = pd.Series(True, index=df.index)
        for p in predicates:
            mask &= p(df).astype(bool)
        return mask

    _pred.__name__ = " & ".join(getattr(p, "__name__", "predicate") for p in predicates) or "all"
    return _pred


# Names usable from the YAML config.
PREDICATES: Mapping[str, Predicate] = {
    "received_xrt": received_xrt,
    "blood_draw_known": blood_draw_known,
    "ch_positive": ch_positive,
    "received_chemo": received_chemo,
}


def resolve_predicates(names: Sequence[str]) -> list[Predicate]:
    out = []
    for name in names:
        if name not in PREDICATES:
            raise SchemaError(name, f"unknown cohort predicate; expected one of {sorted(PREDICATES)}")
        out.append(PREDICATES[name])
    return out


def collapse_rare_categories(
    frame: pd.DataFrame,
    *,
    column: str = "tumor_type",
    id_col: str = ID_COL,
    threshold: int = RARE_CATEGORY_THRESHOLD,
    other_label: str = OTHER,
) -> tuple[pd.Series, pd.DataFrame]:
    """
    Relabel categories seen in fewer than `threshold` distinct subjects of
    `frame` as `other_label`. Counts come from `frame` only, so the result
    must be recomputed for every cohort.
    """
    values = _col(frame, column).astype(object).where(frame[column].notna(), "Missing")
    ids = _col(frame, id_col)
    counts = (
        pd.DataFrame({"category": values, "id": ids})
        .groupby("category")["id"]
        .nunique()
        .rename("n_subjects")
        .reset_index()
    )
    counts["collapsed"] = counts["n_subjects"] < int(threshold)
    counts["label"] = np.where(counts["collapsed"], other_label, counts["category"])
    counts = counts.sort_values(["n_subjects", "category"], ascending=[False, True]).reset_index(drop=True)

    mapping = dict(zip(counts["category"], counts["label"]))
    relabeled = values.map(mapping).rename(f"{column}_collapsed")
    return relabeled, counts


@dataclass(frozen=True)
class Cohort:
    name: str
    frame: pd.DataFrame
    collapse_table: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def n_subjects(self) -> int:
        return int(self.frame[ID_COL].nunique())


def filter_cohort(
    df: pd.DataFrame,
    *predicates: Predicate,
    name: str,
    collapse_column: Optional[str] = "tumor_type",
    threshold: int = RARE_CATEGORY_THRESHOLD,
) -> Cohort:
    """
    Apply row predicates, then collapse rare `collapse_column` categories
    using counts from the filtered rows only.
    """
    mask = all_of(*predicates)(df) if predicates else pd.Series(True, index=df.index)
    frame = df.loc[mask.to_numpy(dtype=bool)].reset_index(drop=True)
    if frame.empty:
        raise EmptyCohortError(name)

    table = pd.DataFrame()
    if collapse_column is not None:
        relabeled, table = collapse_rare_categories(frame, column=collapse_column, threshold=threshold)
        frame = frame.assign(**{relabeled.name: relabeled.to_numpy()})

    logger.info("cohort %s: %d rows, %d subjects", name, len(frame), frame[ID_COL].nunique())
    return Cohort(name=name, frame=frame, collapse_table=table)


def cohort_counts(cohorts: Sequence[Cohort]) -> pd.DataFrame:
    rows = []
    for c in cohorts:
        f = c.frame
        rows.append(
            {
                "cohort": c.name,
                "n_rows": int(len(f)),
                "n_subjects": c.n_subjects,
                "n_ch": int(f["any_ch"].sum()) if "any_ch" in f.columns else None,
                "n_ddr_ch": int(f["ddr_ch"].sum()) if "ddr_ch" in f.columns else None,
                "n_xrt": int(received_xrt(f).sum()) if "xrt" in f.columns else None,
            }
        )
    return pd.DataFrame(rows)


def _fmt_mean_sd(mu: float, sd: float) -> str:
    return f"{mu:.2f} ({sd:.2f})"


def _level_text(v) -> str:
    if pd.isna(v):
        return "Missing"
    if isinstance(v, (float, np.floating)) and float(v).is_integer():
        return str(int(v))
    return str(v)


def _fmt_count(n: int, total: int) -> str:
    pct = 100.0 * n / total if total else float("nan")
    return f"{n} ({pct:.1f}%)"


def summarize_cohorts(
    cohorts: Sequence[Cohort],
    *,
    variables: Sequence[str],
    max_levels: int = 20,
) -> pd.DataFrame:
    """
    Descriptive table with one row per (variable, level) and one column per
    cohort: n (%) for categorical levels, mean (SD) for continuous variables.
    """
    rows: dict[tuple[str, str], dict[str, str]] = {}
    order: list[tuple[str, str]] = []

    def _put(key: tuple[str, str], cohort: str, value: str) -> None:
        if key not in rows:
            rows[key] = {}
            order.append(key)
        rows[key][cohort] = value

    for c in cohorts:
        f = c.frame
        total = int(len(f))
        _put(("N", ""), c.name, str(total))
        for var in variables:
            if var not in f.columns:
                raise SchemaError(var, f"summary variable absent from cohort {c.name!r}")
            s = f[var]
            if pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s) and s.dropna().nunique() > 2:
                x = pd.to_numeric(s, errors="coerce")
                _put((var, "mean (SD)"), c.name, _fmt_mean_sd(float(x.mean()), float(x.std(ddof=1))))
                _put((var, "missing"), c.name, str(int(x.isna().sum())))
                continue

            x = s.astype(object).map(_level_text).astype(str)
            levels = list(s.cat.categories) if isinstance(s.dtype, pd.CategoricalDtype) else sorted(x.unique())
            levels = [str(lv) for lv in levels]
            if "Missing" in set(x) and "Missing" not in levels:
                levels.append("Missing")
            if len(levels) > max_levels:
                top = x.value_counts().index[: max_levels - 1].tolist()
                x = x.where(x.isin(top), other=OTHER)
                levels = [lv for lv in levels if lv in top] + [OTHER]
            for lvl in levels:
                _put((var, lvl), c.name, _fmt_count(int((x == lvl).sum()), total))

    out = pd.DataFrame(
        [{"variable": k[0], "level": k[1], **rows[k]} for k in order],
        columns=["variable", "level"] + [c.name for c in cohorts],
    )
    return out.fillna("")
