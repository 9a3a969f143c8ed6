#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from chxrt.io import write_table
from chxrt.synthetic import SyntheticConfig, make_synthetic_cohort


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate a synthetic subject table for smoke testing.")
    p.add_argument("--out", required=True, help="Output path (.csv, .tsv or .parquet).")
    p.add_argument("--n", type=int, default=2000, help="Number of synthetic subjects.")
    p.add_argument("--seed", type=int, default=11, help="Random seed.")
    p.add_argument("--effect-site", default="pelvis", help="Site whose dose drives the injected association.")
    p.add_argument("--effect-gene", default="PPM1D", help="Gene carrying the injected association.")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    cfg = SyntheticConfig(n=args.n, seed=args.seed, effect_site=args.effect_site, effect_gene=args.effect_gene)
    df = make_synthetic_cohort(cfg)
    write_table(df, args.out)
    print(f"Wrote synthetic table to: {args.out}")


if __name__ == "__main__":
    main()
