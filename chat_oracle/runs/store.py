"""
Persistent run store.

One directory per run under the runs root; ``status.json`` is the single
source of truth for the run's state. Writers replace files atomically so a
caller polling from another process never reads a partial document.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol

from ..errors import INTERNAL, NOT_FOUND, OracleError
from ..fs_utils import read_json_if_exists, remove_file, write_json_atomic, write_text_atomic
from ..restart.locks import ExclusiveFileLock
from . import paths
from .models import RunOptions, RunRecord, utc_now

logger = logging.getLogger("chat_oracle.runs")

# status.json is rewritten by the worker and by callers (cancel, resume).
STATUS_LOCK_WAIT = 5.0
STATUS_LOCK_STALE = 30.0


class RunStore(Protocol):
    def get(self, run_id: str) -> RunRecord | None: ...

    def put(self, record: RunRecord) -> None: ...

    def locked(self, run_id: str) -> AbstractContextManager[None]: ...

    def list(self) -> list[RunRecord]: ...

    def delete(self, run_id: str) -> bool: ...

    def load_options(self, run_id: str) -> RunOptions: ...

    def save_options(self, run_id: str, options: RunOptions) -> None: ...

    def request_cancel(self, run_id: str) -> None: ...

    def cancel_requested(self, run_id: str) -> bool: ...

    def clear_cancel(self, run_id: str) -> None: ...

    def write_result(self, run_id: str, text: str) -> None: ...

    def read_result(self, run_id: str) -> str | None: ...


class FileRunStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def run_path(self, run_id: str) -> Path:
        if not paths.valid_run_id(run_id):
            raise OracleError(NOT_FOUND, f"Invalid run id: {run_id!r}", "Pass the id printed by start")
        return paths.run_dir(run_id, self.root)

    def exists(self, run_id: str) -> bool:
        return paths.valid_run_id(run_id) and paths.status_path(self.run_path(run_id)).is_file()

    def get(self, run_id: str) -> RunRecord | None:
        if not paths.valid_run_id(run_id):
            return None
        data = read_json_if_exists(paths.status_path(self.run_path(run_id)))
        if data is None:
            return None
        try:
            return RunRecord.from_dict(data)
        except (TypeError, ValueError) as exc:
            logger.warning("[store] unreadable status for %s: %s", run_id, exc)
            return None

    def put(self, record: RunRecord) -> None:
        record.updated_at = utc_now()
        try:
            write_json_atomic(paths.status_path(self.run_path(record.run_id)), record.to_dict())
        except OSError as exc:
            raise OracleError(INTERNAL, f"Failed to write run status: {exc}") from exc

    @contextmanager
    def locked(self, run_id: str) -> Iterator[None]:
        """Hold the run's status lock across a read-modify-write.

        Waits up to STATUS_LOCK_WAIT seconds; a lock left by a dead process
        is broken. Runs without a directory have nothing to guard.
        """
        run_path = self.run_path(run_id)
        if not run_path.is_dir():
            yield
            return
        lock = ExclusiveFileLock(paths.status_lock_path(run_path), STATUS_LOCK_STALE)
        deadline = time.monotonic() + STATUS_LOCK_WAIT
        while not lock.try_acquire():
            if time.monotonic() >= deadline:
                raise OracleError(INTERNAL, f"Run {run_id} status is locked by another process", "Retry in a moment")
            time.sleep(0.02)
        try:
            yield
        finally:
            lock.release()

    def list(self) -> list[RunRecord]:
        if not self.root.is_dir():
            return []
        records: list[RunRecord] = []
        for child in sorted(self.root.iterdir()):
            if child.is_dir():
                record = self.get(child.name)
                if record is not None:
                    records.append(record)
        return records

    def delete(self, run_id: str) -> bool:
        run_path = self.run_path(run_id)
        if not run_path.is_dir():
            return False
        shutil.rmtree(run_path)
        return True

    def load_options(self, run_id: str) -> RunOptions:
        data = read_json_if_exists(paths.options_path(self.run_path(run_id)))
        if data is None:
            raise OracleError(NOT_FOUND, f"Run options missing for {run_id}")
        try:
            return RunOptions.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise OracleError(INTERNAL, f"Corrupt run options for {run_id}: {exc}") from exc

    def save_options(self, run_id: str, options: RunOptions) -> None:
        write_json_atomic(paths.options_path(self.run_path(run_id)), options.to_dict())

    def request_cancel(self, run_id: str) -> None:
        write_json_atomic(paths.cancel_path(self.run_path(run_id)), {"canceled": True, "requested_at": utc_now()})

    def cancel_requested(self, run_id: str) -> bool:
        return paths.cancel_path(self.run_path(run_id)).is_file()

    def clear_cancel(self, run_id: str) -> None:
        remove_file(paths.cancel_path(self.run_path(run_id)))

    def write_result(self, run_id: str, text: str) -> None:
        write_text_atomic(paths.result_path(self.run_path(run_id)), text)

    def read_result(self, run_id: str) -> str | None:
        try:
            return paths.result_path(self.run_path(run_id)).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None


class MemoryRunStore:
    """Process-local store for tests and embedding."""

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}
        self._options: dict[str, dict] = {}
        self._results: dict[str, str] = {}
        self._cancels: set[str] = set()
        self._lock = threading.RLock()

    def get(self, run_id: str) -> RunRecord | None:
        data = self._records.get(run_id)
        return RunRecord.from_dict(dict(data)) if data is not None else None

    def put(self, record: RunRecord) -> None:
        record.updated_at = utc_now()
        self._records[record.run_id] = record.to_dict()

    @contextmanager
    def locked(self, run_id: str) -> Iterator[None]:  # noqa: ARG002
        with self._lock:
            yield

    def list(self) -> list[RunRecord]:
        return [RunRecord.from_dict(dict(data)) for _, data in sorted(self._records.items())]

    def delete(self, run_id: str) -> bool:
        self._options.pop(run_id, None)
        self._results.pop(run_id, None)
        self._cancels.discard(run_id)
        return self._records.pop(run_id, None) is not None

    def load_options(self, run_id: str) -> RunOptions:
        if run_id not in self._options:
            raise OracleError(NOT_FOUND, f"Run options missing for {run_id}")
        return RunOptions.from_dict(dict(self._options[run_id]))

    def save_options(self, run_id: str, options: RunOptions) -> None:
        self._options[run_id] = options.to_dict()

    def request_cancel(self, run_id: str) -> None:
        self._cancels.add(run_id)

    def cancel_requested(self, run_id: str) -> bool:
        return run_id in self._cancels

    def clear_cancel(self, run_id: str) -> None:
        self._cancels.discard(run_id)

    def write_result(self, run_id: str, text: str) -> None:
        self._results[run_id] = text

    def read_result(self, run_id: str) -> str | None:
        return self._results.get(run_id)


__all__ = ["FileRunStore", "MemoryRunStore", "RunStore"]
