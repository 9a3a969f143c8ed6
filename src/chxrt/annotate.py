from __future__ import annotations

from typing import Mapping, Optional

import numpy as np
import pandas as pd

from .schema import SITE_LABELS

TERM_LABELS: dict[str, str] = {
    **SITE_LABELS,
    "age_scaled": "Age (scaled)",
    "any_chemo": "Any chemotherapy",
    "xrt": "Radiotherapy",
    "any_ch": "CH",
    "ddr_ch": "DDR CH",
    "dta_ch": "DTA CH",
    "non_ddr_ch": "Non-DDR CH",
    "max_vaf": "Max VAF",
}


def significance_stars(p: float) -> str:
    if p is None or not np.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    return ""


def p_value_category(p: float) -> str:
    if p is None or not np.isfinite(p):
        return ""
    if p < 0.05:
        return "< 0.05"
    if p < 0.2:
        return "0.05–0.2"
    return "> 0.2"


def relabel_terms(
    results: pd.DataFrame,
    *,
    labels: Optional[Mapping[str, str]] = None,
    columns: tuple[str, ...] = ("term", "axis1", "axis2", "outcome"),
) -> pd.DataFrame:
    """
    Add `<column>_label` columns with human-readable names. Existing columns,
    including the numeric ones and `support`, are left untouched, as is row order.
    """
    lookup = dict(TERM_LABELS if labels is None else labels)
    out = results.copy()
    for c in columns:
        if c in out.columns:
            out[f"{c}_label"] = out[c].map(lambda v: lookup.get(v, v))
    if "p_value" in out.columns:
        out["stars"] = out["p_value"].map(significance_stars)
        out["p_category"] = out["p_value"].map(p_value_category)
    return out


def suppression_mask(results: pd.DataFrame) -> pd.Series:
    """True where a cell has zero support and must not be drawn."""
    return pd.to_numeric(results["support"], errors="coerce").fillna(0).astype(int) == 0
