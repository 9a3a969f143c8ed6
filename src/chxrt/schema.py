from __future__ import annotations

from typing import Iterable, Sequence

import pandas as pd

from .errors import SchemaError

ID_COL = "patient_id"

DEMOGRAPHIC_COLS = ["age", "gender", "race", "smoke", "packyears"]

CHEMO_CLASSES = [
    "alkylating_agent",
    "platinum",
    "antimetabolite",
    "topoisomerase_ii_inhibitor",
    "taxane",
    "microtubule_damaging",
]

SITES = [
    "abdomen",
    "breast",
    "chest",
    "headneck",
    "lung",
    "mediastinum",
    "pelvis",
    "spine",
    "brain",
]
DOSE_COLS = [f"eqd_3{s}" for s in SITES]
TOTAL_DOSE_COL = "eqd_3total"

GENE_PANEL = ["DNMT3A", "TET2", "ASXL1", "PPM1D", "TP53", "CHEK2", "ATM", "SRSF2", "SF3B1", "JAK2"]
DDR_GENES = ["PPM1D", "TP53", "ATM", "CHEK2"]
DTA_GENES = ["DNMT3A", "TET2", "ASXL1"]

TREATMENT_COLS = CHEMO_CLASSES + ["xrt", "xrt_modality"] + DOSE_COLS + ["days_to_blood_draw"]
MUTATION_COLS = GENE_PANEL + ["mutation_count", "max_vaf"]

REQUIRED_COLS = [ID_COL] + DEMOGRAPHIC_COLS + ["tumor_type"] + TREATMENT_COLS + MUTATION_COLS

NUMERIC_COLS = ["age", "packyears", "days_to_blood_draw", "mutation_count", "max_vaf"] + DOSE_COLS

SITE_LABELS = {f"eqd_3{s}_100": label for s, label in zip(
    SITES,
    ["Abdomen", "Breast", "Chest", "Head & Neck", "Lung", "Mediastinum", "Pelvis", "Spine", "Brain"],
)}
SITE_LABELS[f"{TOTAL_DOSE_COL}_100"] = "Total dose"


def normalized_dose_col(site: str) -> str:
    return f"eqd_3{site}_100"


def require_columns(df: pd.DataFrame, columns: Iterable[str]) -> None:
    for c in columns:
        if c not in df.columns:
            raise SchemaError(c)


def validate_schema(df: pd.DataFrame, *, columns: Sequence[str] = REQUIRED_COLS) -> None:
    """Check that every contract column is present and numeric fields parse as numbers."""
    require_columns(df, columns)
    for c in NUMERIC_COLS:
        if c not in columns:
            continue
        s = df[c]
        if pd.api.types.is_numeric_dtype(s):
            continue
        parsed = pd.to_numeric(s, errors="coerce")
        text = s.map(lambda v: "" if pd.isna(v) else str(v).strip())
        bad = (text != "") & parsed.isna()
        if bad.any():
            example = s[bad].iloc[0]
            raise SchemaError(c, f"expected numeric values, got {example!r}")

DERIVED_COLS = (
    ["race_cat", "smoke_cat", "gender_cat", "packyears_bin", "mutation_count_bin", "vaf_bin", "age_scaled"]
    + [f"{c}_100" for c in DOSE_COLS]
    + [TOTAL_DOSE_COL, f"{TOTAL_DOSE_COL}_100"]
    + ["ddr_ch", "dta_ch", "any_ch", "non_ddr_ch", "any_chemo", "tumor_type_collapsed"]
)

ANALYSIS_COLS = REQUIRED_COLS + DERIVED_COLS
