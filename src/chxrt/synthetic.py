from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.special import expit

from .schema import CHEMO_CLASSES, GENE_PANEL, SITES


@dataclass(frozen=True)
class SyntheticConfig:
    n: int = 2000
    seed: int = 11
    effect_site: str = "pelvis"
    effect_gene: str = "PPM1D"
    effect_log_or: float = 4.0  # per 100 Gy EQD3
    unmeasured_rate: float = 0.02


# Baseline panel prevalence, roughly the ordering seen in solid-tumor CH cohorts.
_GENE_PREVALENCE = {
    "DNMT3A": 0.14,
    "TET2": 0.06,
    "ASXL1": 0.03,
    "PPM1D": 0.06,
    "TP53": 0.04,
    "CHEK2": 0.03,
    "ATM": 0.02,
    "SRSF2": 0.015,
    "SF3B1": 0.015,
    "JAK2": 0.01,
}

_TUMOR_TYPES = {
    "Breast": 0.22,
    "Prostate": 0.18,
    "Lung": 0.16,
    "Colorectal": 0.12,
    "Head and Neck": 0.1,
    "Pancreas": 0.08,
    "Bladder": 0.06,
    "Melanoma": 0.05,
    "Sarcoma": 0.02,
    "Thymus": 0.01,
}


def make_synthetic_cohort(cfg: SyntheticConfig = SyntheticConfig()) -> pd.DataFrame:
    """
    Synthetic subject table in the input schema with a single injected
    association between `effect_site` dose and `effect_gene` mutation.

    This is ONLY for pipeline testing; it does not represent real clinical data.
    """
    if cfg.effect_site not in SITES:
        raise ValueError(f"Unknown site: {cfg.effect_site}")
    if cfg.effect_gene not in GENE_PANEL:
        raise ValueError(f"Unknown gene: {cfg.effect_gene}")

    rng = np.random.default_rng(cfg.seed)
    n = int(cfg.n)

    age = np.clip(rng.normal(62, 12, size=n), 20, 95)
    gender = rng.choice(["M", "F"], size=n, p=[0.48, 0.52])
    race = rng.choice(
        ["WHITE", "BLACK", "ASIAN", "OTHER", "MISSING/OTHER", "UNKNOWN", ""],
        size=n,
        p=[0.62, 0.1, 0.08, 0.06, 0.05, 0.05, 0.04],
    )
    smoke = rng.choice(["Never", "Former", "Current", "Unknown"], size=n, p=[0.45, 0.35, 0.12, 0.08])
    packyears = np.where(smoke == "Never", 0.0, np.round(rng.lognormal(np.log(18), 0.9, size=n), 1))
    packyears = np.where(rng.random(n) < 0.05, np.nan, packyears)

    tumor_type = rng.choice(list(_TUMOR_TYPES), size=n, p=list(_TUMOR_TYPES.values()))

    chemo = {c: rng.binomial(1, 0.25, size=n) for c in CHEMO_CLASSES}

    xrt = rng.binomial(1, 0.6, size=n)
    modality = np.where(xrt == 1, rng.choice(["IMRT", "3D", "SBRT", "Proton"], size=n), None)

    doses: dict[str, np.ndarray] = {}
    for site in SITES:
        p_site = 0.5 if site == cfg.effect_site else 0.15
        hit = (xrt == 1) & (rng.random(n) < p_site)
        doses[f"eqd_3{site}"] = np.where(hit, np.round(rng.uniform(20, 80, size=n), 1), 0.0)

    days_to_draw = np.where(rng.random(n) < 0.1, np.nan, np.round(rng.uniform(30, 1500, size=n)))

    age_z = (age - 62) / 12
    genes: dict[str, np.ndarray] = {}
    for gene, prev in _GENE_PREVALENCE.items():
        lin = np.log(prev / (1 - prev)) + 0.4 * age_z
        if gene == cfg.effect_gene:
            lin = lin + cfg.effect_log_or * doses[f"eqd_3{cfg.effect_site}"] / 100.0
        flag = rng.binomial(1, expit(lin)).astype(float)
        flag[rng.random(n) < cfg.unmeasured_rate] = np.nan
        genes[gene] = flag

    panel = np.nan_to_num(np.column_stack([genes[g] for g in GENE_PANEL]), nan=0.0)
    mutation_count = panel.sum(axis=1) + rng.binomial(1, 0.05, size=n)
    max_vaf = np.where(mutation_count > 0, np.round(rng.uniform(0.02, 0.45, size=n), 3), np.nan)

    df = pd.DataFrame(
        {
            "patient_id": np.arange(1, n + 1),
            "age": np.round(age, 1),
            "gender": gender,
            "race": race,
            "smoke": smoke,
            "packyears": packyears,
            "tumor_type": tumor_type,
            **chemo,
            "xrt": xrt,
            "xrt_modality": modality,
            **doses,
            "days_to_blood_draw": days_to_draw,
            **genes,
            "mutation_count": mutation_count,
            "max_vaf": max_vaf,
        }
    )
    return df
