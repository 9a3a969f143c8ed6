#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from chxrt.errors import EmptyCohortError, SchemaError
from chxrt.features import derive_features
from chxrt.io import read_table
from chxrt.study import build_cohorts, load_config


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Validate a subject table against the fixed schema and the config cohorts.")
    p.add_argument("--input", required=True, help="Subject table (.csv, .tsv or .parquet).")
    p.add_argument(
        "--config",
        default=str(ROOT / "configs" / "analysis_default.yaml"),
        help="YAML config (default: configs/analysis_default.yaml).",
    )
    p.add_argument("--out", default=None, help="Optional JSON report path.")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    df = read_table(args.input)

    report: dict = {"input": str(args.input), "n_rows": int(df.shape[0]), "n_cols": int(df.shape[1])}
    failures = []
    try:
        enriched = derive_features(df)
        cohorts = build_cohorts(enriched, cfg)
        report["cohorts"] = {name: {"n_rows": len(c.frame), "n_subjects": c.n_subjects} for name, c in cohorts.items()}
    except SchemaError as e:
        failures.append(f"schema:{e.field}:{e.reason}")
    except EmptyCohortError as e:
        failures.append(f"empty_cohort:{e.cohort}")
    report["failures"] = failures

    text = json.dumps(report, ensure_ascii=False, indent=2)
    if args.out:
        Path(args.out).parent.mkdir(parents=True, exist_ok=True)
        Path(args.out).write_text(text, encoding="utf-8")
    print(text)

    if failures:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
