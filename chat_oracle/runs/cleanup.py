from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path

from ..fs_utils import read_json_if_exists
from . import paths
from .models import ACTIVE_STATES, parse_iso

logger = logging.getLogger("chat_oracle.runs")

DEFAULT_TTL = 48 * 60 * 60.0


def _created_at(run_path: Path) -> float | None:
    status = read_json_if_exists(paths.status_path(run_path))
    created = parse_iso(status.get("created_at")) if isinstance(status, dict) else None
    if created is not None:
        return created
    try:
        return run_path.stat().st_mtime
    except OSError:
        return None


def cleanup_runs_root(root: str | Path, ttl: float = DEFAULT_TTL, *, now: float | None = None) -> list[str]:
    """Remove run directories older than ``ttl`` seconds.

    Runs that are still active (pending, running, needs_user) are kept no
    matter how old they are. Returns the removed run ids.
    """
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        return []
    current = time.time() if now is None else now
    removed: list[str] = []
    for entry in sorted(root_path.iterdir()):
        if not entry.is_dir():
            continue
        created = _created_at(entry)
        if created is None or current - created < ttl:
            continue
        status = read_json_if_exists(paths.status_path(entry))
        if isinstance(status, dict) and status.get("state") in ACTIVE_STATES:
            continue
        try:
            shutil.rmtree(entry)
        except OSError as exc:
            logger.warning("[cleanup] failed to remove %s: %s", entry.name, exc)
            continue
        removed.append(entry.name)
    if removed:
        logger.info("[cleanup] removed %d run(s) older than %.0fs", len(removed), ttl)
    return removed
