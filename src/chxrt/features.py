from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .errors import SchemaError
from .schema import (
    CHEMO_CLASSES,
    DDR_GENES,
    DOSE_COLS,
    DTA_GENES,
    GENE_PANEL,
    NUMERIC_COLS,
    TOTAL_DOSE_COL,
    validate_schema,
)

PACKYEAR_EDGES = (0.0, 0.001, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 40.0, 50.0, 100.0, np.inf)
VAF_EDGES = (0.0, 0.05, 0.10, 0.20, 1.0)
MUTATION_COUNT_LEVELS = ["0", "1", ">=2"]

MISSING = "Missing"
OTHER = "Other"

_RACE_MISSING = {"", "UNKNOWN"}
_SMOKE_NO = {"0", "0.0", "NO", "NEVER", "FALSE"}
_SMOKE_YES = {"1", "1.0", "YES", "EVER", "FORMER", "CURRENT", "TRUE"}
_FLAG_TRUE = {"1", "1.0", "TRUE", "T", "YES", "Y"}
_FLAG_FALSE = {"0", "0.0", "FALSE", "F", "NO", "N"}


def interval_labels(edges: Sequence[float]) -> list[str]:
    labels = []
    for i, (lo, hi) in enumerate(zip(edges[:-1], edges[1:])):
        last = i == len(edges) - 2
        hi_txt = "Inf" if np.isinf(hi) else f"{hi:g}"
        labels.append(f"[{lo:g}, {hi_txt}]" if last else f"[{lo:g}, {hi_txt})")
    return labels


def _bin_codes(x: np.ndarray, edges: Sequence[float], *, field: str) -> np.ndarray:
    """
    Bucket index for each value using [lo, hi) intervals; the last interval is
    closed on both ends. NaN maps to -1.
    """
    edges_arr = np.asarray(edges, dtype=float)
    codes = np.full(x.shape, -1, dtype=int)
    finite = ~np.isnan(x)
    out_of_range = finite & ((x < edges_arr[0]) | (x > edges_arr[-1]))
    if out_of_range.any():
        bad = x[out_of_range][0]
        raise SchemaError(field, f"value {bad!r} outside [{edges_arr[0]:g}, {edges_arr[-1]:g}]")
    idx = np.searchsorted(edges_arr, x[finite], side="right") - 1
    idx = np.minimum(idx, len(edges_arr) - 2)
    codes[finite] = idx
    return codes


def _require_numeric(s: pd.Series, field: str) -> np.ndarray:
    if isinstance(s.dtype, pd.CategoricalDtype) or pd.api.types.is_bool_dtype(s):
        raise SchemaError(field, f"expected numeric values, got dtype {s.dtype}")
    if pd.api.types.is_numeric_dtype(s):
        return s.to_numpy(dtype=float, na_value=np.nan)
    if s.isna().all():
        return np.full(len(s), np.nan)
    raise SchemaError(field, f"expected numeric values, got dtype {s.dtype}")


def _upper_text(s: pd.Series) -> pd.Series:
    return s.map(lambda v: None if pd.isna(v) else str(v).strip().upper())


def as_flag(s: pd.Series) -> pd.Series:
    """0/1 float flag; NaN where the entry was not measured."""
    if pd.api.types.is_bool_dtype(s):
        return s.astype("float")
    if pd.api.types.is_numeric_dtype(s):
        x = pd.to_numeric(s, errors="coerce")
        return (x > 0).astype(float).where(x.notna())
    text = _upper_text(s)
    out = pd.Series(np.nan, index=s.index, dtype=float)
    out[text.isin(_FLAG_TRUE)] = 1.0
    out[text.isin(_FLAG_FALSE)] = 0.0
    return out


def any_of(df: pd.DataFrame, columns: Sequence[str]) -> pd.Series:
    """Row-wise OR over flag columns; unmeasured entries count as absent."""
    if not columns:
        return pd.Series(0, index=df.index, dtype=int)
    flags = pd.concat([as_flag(df[c]).fillna(0.0) for c in columns], axis=1)
    return (flags > 0).any(axis=1).astype(int)


def _recode_race_value(v) -> str:
    if pd.isna(v):
        return MISSING
    text = str(v).strip()
    if text.upper() in _RACE_MISSING:
        return MISSING
    if text.upper() == "MISSING/OTHER":
        return OTHER
    return text.title()


def recode_race(s: pd.Series) -> pd.Series:
    return s.map(_recode_race_value).astype(object)


def recode_smoking(s: pd.Series) -> pd.Series:
    text = _upper_text(s)
    out = pd.Series(MISSING, index=s.index, dtype=object)
    out[text.isin(_SMOKE_NO)] = "0"
    out[text.isin(_SMOKE_YES)] = "1"
    return out


def recode_gender(s: pd.Series) -> pd.Series:
    text = _upper_text(s)
    out = pd.Series(None, index=s.index, dtype=object)
    out[text.isin({"M", "MALE"})] = "Male"
    out[text.isin({"F", "FEMALE"})] = "Female"
    bad = out.isna()
    if bad.any():
        raise SchemaError("gender", f"unrecognized value {s[bad].iloc[0]!r}")
    return out


def bin_pack_years(s: pd.Series, *, field: str = "packyears") -> pd.Series:
    """
    Ordered pack-year buckets. Levels are limited to the buckets observed in
    the table passed in, so the level set depends on the population.
    """
    x = _require_numeric(s, field)
    codes = _bin_codes(x, PACKYEAR_EDGES, field=field)
    labels = interval_labels(PACKYEAR_EDGES)
    values = np.array([labels[c] if c >= 0 else MISSING for c in codes], dtype=object)
    observed = [labels[c] for c in sorted(set(codes[codes >= 0].tolist()))]
    if (codes < 0).any():
        observed.append(MISSING)
    return pd.Series(pd.Categorical(values, categories=observed, ordered=True), index=s.index)


def bin_mutation_count(s: pd.Series, *, field: str = "mutation_count") -> pd.Series:
    x = np.nan_to_num(_require_numeric(s, field), nan=0.0)
    if (x < 0).any():
        raise SchemaError(field, "negative mutation count")
    values = np.where(x >= 2, ">=2", np.where(x >= 1, "1", "0"))
    return pd.Series(pd.Categorical(values, categories=MUTATION_COUNT_LEVELS, ordered=True), index=s.index)


def bin_vaf(s: pd.Series, *, field: str = "max_vaf") -> pd.Series:
    x = _require_numeric(s, field)
    codes = _bin_codes(x, VAF_EDGES, field=field)
    labels = interval_labels(VAF_EDGES)
    values = np.array([labels[c] if c >= 0 else "None" for c in codes], dtype=object)
    return pd.Series(pd.Categorical(values, categories=["None"] + labels, ordered=True), index=s.index)


def scale_age(s: pd.Series, *, mean: Optional[float] = None, sd: Optional[float] = None) -> pd.Series:
    x = pd.to_numeric(s, errors="coerce").astype(float)
    mu = float(x.mean()) if mean is None else float(mean)
    sigma = float(x.std(ddof=1)) if sd is None else float(sd)
    if not np.isfinite(sigma) or sigma == 0:
        return x - mu
    return (x - mu) / sigma


def normalize_doses(df: pd.DataFrame, dose_cols: Sequence[str] = DOSE_COLS) -> pd.DataFrame:
    out = pd.DataFrame(index=df.index)
    raw = df.loc[:, list(dose_cols)].apply(pd.to_numeric, errors="coerce").astype(float)
    for c in dose_cols:
        out[f"{c}_100"] = raw[c] / 100.0
    out[TOTAL_DOSE_COL] = raw.sum(axis=1, skipna=True)
    out[f"{TOTAL_DOSE_COL}_100"] = out[TOTAL_DOSE_COL] / 100.0
    return out


def derive_features(df: pd.DataFrame) -> pd.DataFrame:
    """
    Build the enriched subject table. Every derived column is a function of its
    own row except `age_scaled` and the `packyears_bin` level set, which use
    the whole table passed in; call this once on the full loaded table.
    """
    validate_schema(df)
    out = df.copy()
    for c in NUMERIC_COLS:
        out[c] = pd.to_numeric(df[c], errors="coerce").astype(float)

    out["race_cat"] = recode_race(df["race"])
    out["smoke_cat"] = recode_smoking(df["smoke"])
    out["gender_cat"] = recode_gender(df["gender"])
    out["packyears_bin"] = bin_pack_years(out["packyears"])
    out["mutation_count_bin"] = bin_mutation_count(out["mutation_count"])
    out["vaf_bin"] = bin_vaf(out["max_vaf"])
    out["age_scaled"] = scale_age(out["age"])

    for c in GENE_PANEL + CHEMO_CLASSES + ["xrt"]:
        out[c] = as_flag(df[c])

    doses = normalize_doses(df)
    for c in doses.columns:
        out[c] = doses[c]

    count = pd.to_numeric(df["mutation_count"], errors="coerce").fillna(0)
    out["ddr_ch"] = any_of(df, DDR_GENES)
    out["dta_ch"] = any_of(df, DTA_GENES)
    out["any_ch"] = (any_of(df, GENE_PANEL).astype(bool) | (count > 0)).astype(int)
    out["non_ddr_ch"] = (out["any_ch"].astype(bool) & ~out["ddr_ch"].astype(bool)).astype(int)
    out["any_chemo"] = any_of(df, CHEMO_CLASSES)
    return out
