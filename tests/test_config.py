from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from chxrt.errors import SchemaError
from chxrt.study import load_config

ROOT = Path(__file__).resolve().parents[1]


def _write(tmp_path: Path, cfg: dict) -> Path:
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def _default() -> dict:
    return yaml.safe_load((ROOT / "configs" / "analysis_default.yaml").read_text(encoding="utf-8"))


def test_default_config_loads() -> None:
    cfg = load_config(ROOT / "configs" / "analysis_default.yaml")
    assert "base" in cfg.covariate_sets
    assert cfg.covariate_sets["base"].reference_levels["race_cat"] == "White"
    assert cfg.rare_category_threshold == 50
    site_gene = next(s for s in cfg.sweeps if s.kind == "site_gene")
    assert len(site_gene.sites) == 9
    assert len(site_gene.genes) == 10


def test_unknown_covariate_fails_at_load(tmp_path: Path) -> None:
    raw = _default()
    raw["covariate_sets"]["base"]["terms"].append("shoe_size")
    with pytest.raises(SchemaError) as exc:
        load_config(_write(tmp_path, raw))
    assert exc.value.field == "shoe_size"


def test_unknown_predicate_fails_at_load(tmp_path: Path) -> None:
    raw = _default()
    raw["cohorts"][0]["filters"] = ["received_magic"]
    with pytest.raises(SchemaError):
        load_config(_write(tmp_path, raw))


def test_unknown_cohort_in_sweep(tmp_path: Path) -> None:
    raw = _default()
    raw["sweeps"][0]["cohort"] = "nope"
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, raw))


def test_sweep_maxiter_is_read_and_checked(tmp_path: Path) -> None:
    raw = _default()
    raw["sweeps"][0]["maxiter"] = 25
    cfg = load_config(_write(tmp_path, raw))
    assert cfg.sweeps[0].maxiter == 25
    assert cfg.sweeps[1].maxiter == 100

    raw["sweeps"][0]["maxiter"] = 0
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, raw))
