#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from chxrt.study import load_config, run_analysis


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Run the full analysis: features, cohorts, summary tables, regression sweeps, plots, audit."
    )
    p.add_argument("--input", required=True, help="Path to the subject table (.csv, .tsv or .parquet).")
    p.add_argument("--outdir", required=True, help="Output directory.")
    p.add_argument(
        "--config",
        default=str(ROOT / "configs" / "analysis_default.yaml"),
        help="Path to YAML config (default: configs/analysis_default.yaml).",
    )
    return p.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()
    cfg = load_config(args.config)
    audit = run_analysis(input_path=args.input, outdir=args.outdir, config=cfg, repo_root=ROOT)

    for sweep in audit["sweeps"]:
        print(f"{sweep['name']}: {sweep['n_rows']}/{sweep['n_cells']} cells fitted")
        for f in sweep["failures"]:
            print(f"  failed {f['axis1']} x {f['axis2']} [{f['subgroup']}]: {f['reason']}")
    print(f"Wrote outputs to: {args.outdir}")
    print(f"Audit: {Path(args.outdir) / 'audit' / 'run_audit.json'}")


if __name__ == "__main__":
    main()
