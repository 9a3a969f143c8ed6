from __future__ import annotations

from pathlib import Path
from typing import Literal

import pandas as pd


def _infer_format(path: Path) -> Literal["csv", "tsv", "parquet"]:
    suffix = path.suffix.lower()
    if suffix in {".csv"}:
        return "csv"
    if suffix in {".tsv", ".txt"}:
        return "tsv"
    if suffix in {".parquet"}:
        return "parquet"
    raise ValueError(f"Unsupported table format for path: {path}")


def read_table(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    fmt = _infer_format(path)
    if fmt == "parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path, sep="," if fmt == "csv" else "\t", low_memory=False)


def write_table(df: pd.DataFrame, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fmt = _infer_format(path)
    if fmt == "csv":
        df.to_csv(path, index=False)
        return
    if fmt == "tsv":
        df.to_csv(path, sep="\t", index=False)
        return
    df.to_parquet(path, index=False)
