from __future__ import annotations

import hashlib
import json
import os
import platform
import subprocess
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from .sweep import SweepResult

AUDIT_FILENAME = "run_audit.json"

# Distribution names, as reported by importlib.metadata.
AUDITED_PACKAGES = ("numpy", "pandas", "scipy", "statsmodels", "matplotlib", "pyarrow", "pyyaml")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def sha256_file(path: str | Path, *, chunk_size: int = 1 << 20) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def package_versions(packages: Sequence[str] = AUDITED_PACKAGES) -> dict[str, Optional[str]]:
    out: dict[str, Optional[str]] = {}
    for name in packages:
        try:
            out[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            out[name] = None
    return out


def environment_record() -> dict[str, Any]:
    return {
        "python": sys.version.replace("\n", " "),
        "platform": platform.platform(),
        "cwd": os.getcwd(),
        "packages": package_versions(),
    }


def git_record(repo_root: str | Path) -> dict[str, Any]:
    """HEAD and `describe --dirty` of the checkout running the analysis, if any."""
    repo_root = Path(repo_root)
    if not (repo_root / ".git").exists():
        return {"present": False}

    def _git(*args: str) -> Optional[str]:
        try:
            return subprocess.check_output(
                ["git", *args], cwd=repo_root, stderr=subprocess.DEVNULL, text=True
            ).strip()
        except (OSError, subprocess.CalledProcessError):
            return None

    return {"present": True, "head": _git("rev-parse", "HEAD"), "describe": _git("describe", "--always", "--dirty")}


@dataclass(frozen=True)
class FileRecord:
    path: str
    size_bytes: int
    sha256: str


def file_record(path: str | Path, *, relative_to: Optional[Path] = None) -> dict[str, Any]:
    path = Path(path)
    shown = path.relative_to(relative_to).as_posix() if relative_to is not None else str(path)
    return asdict(FileRecord(path=shown, size_bytes=path.stat().st_size, sha256=sha256_file(path)))


def output_manifest(outdir: str | Path) -> list[dict[str, Any]]:
    """Every file written under `outdir`, paths relative to it; the audit itself is left out."""
    outdir = Path(outdir)
    return [
        file_record(p, relative_to=outdir)
        for p in sorted(outdir.rglob("*"))
        if p.is_file() and p.name != AUDIT_FILENAME
    ]


def sweep_record(result: SweepResult, *, kind: str, family: str, covariates: Sequence[str]) -> dict[str, Any]:
    """Cell accounting for one sweep: fitted, failed (with reasons) and zero-support counts."""
    return {
        "name": result.name,
        "kind": kind,
        "family": family,
        "covariates": list(covariates),
        "n_cells": result.n_cells,
        "n_rows": len(result.rows),
        "n_failed": len(result.failures),
        "n_zero_support": sum(1 for r in result.rows if r.support == 0),
        "failures": [asdict(f) for f in result.failures],
    }


def build_run_audit(
    *,
    started_utc: str,
    input_path: Path,
    outdir: Path,
    config: Mapping[str, Any],
    cohorts: Mapping[str, Mapping[str, int]],
    sweeps: Sequence[Mapping[str, Any]],
    repo_root: Path,
) -> dict[str, Any]:
    return {
        "run_started_utc": started_utc,
        "input": file_record(input_path),
        "config": dict(config),
        "cohorts": {k: dict(v) for k, v in cohorts.items()},
        "sweeps": [dict(s) for s in sweeps],
        "environment": environment_record(),
        "git": git_record(repo_root),
        "outputs": output_manifest(outdir),
        "run_finished_utc": utc_now_iso(),
    }


def write_run_audit(audit: Mapping[str, Any], audit_dir: str | Path) -> Path:
    path = Path(audit_dir) / AUDIT_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(audit, ensure_ascii=False, indent=2, default=str) + "\n", encoding="utf-8")
    return path
