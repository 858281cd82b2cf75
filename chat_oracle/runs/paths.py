from __future__ import annotations

import re
from pathlib import Path

from ..config import oracle_home

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def default_runs_root() -> Path:
    return oracle_home() / "runs"


def valid_run_id(run_id: str) -> bool:
    """Run ids become directory names; reject anything that could escape the root."""
    return bool(run_id) and bool(_RUN_ID_RE.match(run_id)) and run_id not in {".", ".."}


def run_dir(run_id: str, root: Path | None = None) -> Path:
    return (root or default_runs_root()) / run_id


def status_path(run_path: Path) -> Path:
    return run_path / "status.json"


def status_lock_path(run_path: Path) -> Path:
    return run_path / "status.lock"


def options_path(run_path: Path) -> Path:
    return run_path / "run.json"


def result_path(run_path: Path) -> Path:
    return run_path / "result.md"


def cancel_path(run_path: Path) -> Path:
    return run_path / "cancel.json"


def thinking_path(run_path: Path) -> Path:
    return run_path / "thinking.json"


def log_path(run_path: Path) -> Path:
    return run_path / "run.log"


def debug_dir(run_path: Path) -> Path:
    return run_path / "debug"
