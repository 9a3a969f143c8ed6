from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from .annotate import relabel_terms, suppression_mask


def _ensure_parent(path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def forest_labels(results: pd.DataFrame, *, label_col: str = "axis1_label") -> list[str]:
    """Row labels; the subgroup is appended when rows span more than one."""
    labels = results[label_col].astype(str)
    if "subgroup" in results.columns and results["subgroup"].nunique() > 1:
        labels = labels + " (" + results["subgroup"].astype(str) + ")"
    return [f"{lab} {stars}".strip() for lab, stars in zip(labels, results["stars"])]


def plot_forest(
    results: pd.DataFrame,
    *,
    outpath: str | Path,
    label_col: str = "axis1_label",
    title: str = "Odds ratios (95% CI)",
) -> None:
    """
    Forest plot of estimates with 95% CI; log scale for logistic rows.

    Expected columns in results:
      - estimate, conf_low, conf_high, p_value, support, family
    Zero-support rows are left out.
    """
    import matplotlib.pyplot as plt

    outpath = _ensure_parent(outpath)

    df = relabel_terms(results)
    df = df[~suppression_mask(df)]
    df = df[np.isfinite(df[["estimate", "conf_low", "conf_high"]].to_numpy(dtype=float)).all(axis=1)]
    if df.empty:
        return
    df = df.iloc[::-1].reset_index(drop=True)
    y = np.arange(len(df))
    logistic = (df["family"] == "logistic").all()

    plt.figure(figsize=(7.5, max(3.6, 0.45 * len(df))))
    plt.errorbar(
        x=df["estimate"],
        y=y,
        xerr=[df["estimate"] - df["conf_low"], df["conf_high"] - df["estimate"]],
        fmt="o",
        color="black",
        ecolor="black",
        capsize=3,
    )
    plt.axvline(1.0 if logistic else 0.0, color="black", linewidth=1)
    if logistic:
        plt.xscale("log")
    plt.yticks(y, forest_labels(df, label_col=label_col))
    plt.xlabel("Odds ratio (log scale)" if logistic else "Beta")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(outpath, dpi=200)
    plt.close()


def site_gene_matrix(results: pd.DataFrame, *, sites: Sequence[str], genes: Sequence[str]) -> pd.DataFrame:
    """Coefficient (log OR) per site x gene; NaN where support is zero or the cell failed."""
    mat = pd.DataFrame(np.nan, index=list(sites), columns=list(genes))
    keep = results[~suppression_mask(results)]
    for site, gene, coef in zip(keep["axis1"], keep["axis2"], keep["coef"].astype(float)):
        if site in mat.index and gene in mat.columns and np.isfinite(coef):
            mat.loc[site, gene] = coef
    return mat


def plot_site_gene_heatmap(
    results: pd.DataFrame,
    *,
    sites: Sequence[str],
    genes: Sequence[str],
    outpath: str | Path,
    title: str = "Dose association by site and gene (log OR)",
) -> None:
    import matplotlib.pyplot as plt

    outpath = _ensure_parent(outpath)
    mat = site_gene_matrix(results, sites=sites, genes=genes)
    values = np.ma.masked_invalid(mat.to_numpy(dtype=float))
    bound = float(np.abs(values).max()) if values.count() else 1.0

    stars = relabel_terms(results).set_index(["axis1", "axis2"])["stars"]
    site_labels = relabel_terms(pd.DataFrame({"axis1": [f"eqd_3{s}_100" for s in sites]}))["axis1_label"]

    fig, ax = plt.subplots(figsize=(1.0 + 0.6 * len(genes), 1.0 + 0.45 * len(sites)))
    cmap = plt.get_cmap("RdBu_r").copy()
    cmap.set_bad(color="#dddddd")
    im = ax.imshow(values, cmap=cmap, vmin=-bound, vmax=bound, aspect="auto")
    for i, site in enumerate(sites):
        for j, gene in enumerate(genes):
            if values.mask is not np.ma.nomask and values.mask[i, j]:
                continue
            ax.text(j, i, stars.get((site, gene), ""), ha="center", va="center", fontsize=8)
    ax.set_xticks(np.arange(len(genes)))
    ax.set_xticklabels(list(genes), rotation=45, ha="right")
    ax.set_yticks(np.arange(len(sites)))
    ax.set_yticklabels(list(site_labels))
    ax.set_title(title)
    fig.colorbar(im, ax=ax, shrink=0.8)
    fig.tight_layout()
    fig.savefig(outpath, dpi=200)
    plt.close(fig)
