from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ..fs_utils import pid_alive, read_json_if_exists, remove_file

logger = logging.getLogger("chat_oracle.restart")

STALE_LOCK_SECONDS = 600.0


class Lock(Protocol):
    def try_acquire(self) -> bool: ...

    def release(self) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class ExclusiveFileLock:
    """Inter-process lock backed by a create-exclusive file.

    The file holds ``{pid, created_at}`` of the owner. A lock whose owner pid
    is gone, or that is older than ``stale_after`` seconds, is left over from
    an earlier cycle and gets broken on the next acquisition attempt.
    """

    path: Path
    stale_after: float = STALE_LOCK_SECONDS
    _held: bool = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> dict[str, Any] | None:
        data = read_json_if_exists(self.path)
        return data if isinstance(data, dict) else None

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            json.dump({"pid": os.getpid(), "created_at": _now_ms()}, fp)
            fp.flush()
        return True

    def try_acquire(self) -> bool:
        if self._held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            self._held = True
            return True
        if self._break_if_stale() and self._create():
            self._held = True
            return True
        return False

    def is_stale(self, now_ms: int | None = None) -> bool:
        now_ms = _now_ms() if now_ms is None else now_ms
        data = self.owner()
        if data is None:
            # Unreadable: either mid-write by its creator or truncated by a crash.
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.stale_after
        pid = data.get("pid")
        if isinstance(pid, int) and not pid_alive(pid):
            return True
        created = data.get("created_at")
        return isinstance(created, (int, float)) and now_ms - created > self.stale_after * 1000

    def _break_if_stale(self) -> bool:
        before = self.owner()
        if not self.is_stale():
            return False
        tombstone = self.path.with_name(f"{self.path.name}.stale.{os.getpid()}")
        try:
            os.replace(self.path, tombstone)
        except FileNotFoundError:
            # Someone else broke it first.
            return True
        moved = read_json_if_exists(tombstone)
        if moved != before:
            # Another process replaced the stale lock between our read and the
            # rename; put its fresh lock back unless a newer one exists.
            with contextlib.suppress(FileExistsError):
                os.link(tombstone, self.path)
            remove_file(tombstone)
            return False
        remove_file(tombstone)
        logger.info("[restart] broke stale lock %s (owner=%s)", self.path.name, before)
        return True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        remove_file(self.path)


_MEMORY_GUARD = threading.Lock()
_MEMORY_LOCKS: set[str] = set()


@dataclass(slots=True)
class InMemoryLock:
    """Thread-safe stand-in for ExclusiveFileLock within one process."""

    name: str
    registry: set[str] = field(default_factory=lambda: _MEMORY_LOCKS)
    _held: bool = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return True
        with _MEMORY_GUARD:
            if self.name in self.registry:
                return False
            self.registry.add(self.name)
        self._held = True
        return True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        with _MEMORY_GUARD:
            self.registry.discard(self.name)


__all__ = ["ExclusiveFileLock", "InMemoryLock", "Lock", "STALE_LOCK_SECONDS"]
