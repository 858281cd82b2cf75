"""Atomic file primitives.

Every document another process may read concurrently is written to a temp
file in the same directory and then renamed over the target, so readers see
either the old or the new content, never a partial write.
"""

from __future__ import annotations

import json
import os
from contextlib import suppress
from pathlib import Path
from typing import Any


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fp:
            fp.write(text)
            fp.flush()
            os.fsync(fp.fileno())
        tmp.replace(path)
    finally:
        with suppress(FileNotFoundError):
            tmp.unlink()


def write_json_atomic(path: Path, payload: Any) -> None:
    text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    write_text_atomic(path, text + "\n")


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def read_json_if_exists(path: Path) -> Any | None:
    """Return parsed JSON, or None when the file is missing or corrupt."""
    try:
        if not path.is_file():
            return None
        return read_json(path)
    except (OSError, ValueError):
        return None


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def pid_alive(pid: int | None) -> bool:
    """Signal-0 check; a pid we may not signal still counts as alive.

    An exited child of this process is reaped first, so it does not linger
    as a zombie that still answers signal 0.
    """
    if not pid or pid <= 0:
        return False
    with suppress(ChildProcessError):
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
