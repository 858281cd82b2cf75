from __future__ import annotations

import json
import os

from chat_oracle.runs.cleanup import cleanup_runs_root
from chat_oracle.runs.models import parse_iso

NOW = parse_iso("2026-03-10T12:00:00.000Z")
HOUR = 3600.0


def _run(root, run_id: str, state: str | None, created_at: str) -> None:  # noqa: ANN001
    run_path = root / run_id
    run_path.mkdir()
    if state is not None:
        status = {"run_id": run_id, "prompt": "p", "state": state, "created_at": created_at}
        (run_path / "status.json").write_text(json.dumps(status), encoding="utf-8")


def test_removes_only_expired_finished_runs(tmp_path) -> None:  # noqa: ANN001
    _run(tmp_path, "old-done", "completed", "2026-03-07T12:00:00.000Z")
    _run(tmp_path, "old-failed", "failed", "2026-03-07T11:00:00.000Z")
    _run(tmp_path, "old-running", "running", "2026-03-01T12:00:00.000Z")
    _run(tmp_path, "old-parked", "needs_user", "2026-03-01T12:00:00.000Z")
    _run(tmp_path, "new-done", "completed", "2026-03-10T10:00:00.000Z")

    removed = cleanup_runs_root(tmp_path, 48 * HOUR, now=NOW)

    assert sorted(removed) == ["old-done", "old-failed"]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["new-done", "old-parked", "old-running"]


def test_dir_without_status_uses_mtime(tmp_path) -> None:  # noqa: ANN001
    _run(tmp_path, "orphan", None, "")
    os.utime(tmp_path / "orphan", (NOW - 72 * HOUR, NOW - 72 * HOUR))

    assert cleanup_runs_root(tmp_path, 48 * HOUR, now=NOW) == ["orphan"]


def test_missing_root_is_noop(tmp_path) -> None:  # noqa: ANN001
    assert cleanup_runs_root(tmp_path / "absent", now=NOW) == []
