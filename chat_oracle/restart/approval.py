"""
Restart approval protocol.

Several runs may share one browser profile. When the browser has to be
killed and relaunched, that must happen once, and only after a human said
yes. Coordination happens through four files in the profile's approvals
directory:

- ``restart-approval.json`` ``{approved_at}``: a human approved a restart
- ``restart-done.json`` ``{done_at, approved_at}``: a restart finished
- ``restart.lock``: held by the single process performing the restart
- ``restart-notify.lock``: held by the single process asking the human

Records only count when their timestamp is at or after the moment the
current waiter started waiting, so leftovers from an earlier cycle never
satisfy a new one. Timestamps are epoch milliseconds.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..fs_utils import read_json_if_exists, remove_file, write_json_atomic
from .locks import STALE_LOCK_SECONDS, ExclusiveFileLock, Lock
from .notify import Notifier, notify_restart

logger = logging.getLogger("chat_oracle.restart")

APPROVAL_FILE = "restart-approval.json"
DONE_FILE = "restart-done.json"
RESTART_LOCK = "restart.lock"
NOTIFY_LOCK = "restart-notify.lock"

ACTION_RESTART = "restart"
ACTION_DONE = "done"
ACTION_CANCELED = "canceled"
ACTION_TIMEOUT = "timeout"

STATUS_THROTTLE_SECONDS = 60.0


def now_ms() -> int:
    return int(time.time() * 1000)


def _timestamp(data: Any, key: str) -> int | None:
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def is_fresh_done(done: dict[str, Any] | None, wait_since: int) -> bool:
    done_at = _timestamp(done, "done_at")
    approved_at = _timestamp(done, "approved_at")
    if done_at is not None and done_at >= wait_since:
        return True
    return approved_at is not None and approved_at >= wait_since


@dataclass(slots=True)
class ApprovalResult:
    action: str
    approved_at: int | None = None
    done_at: int | None = None


class RestartCoordinator:
    def __init__(
        self,
        approvals_dir: str | Path,
        *,
        notifier: Notifier | None = None,
        performer_lock: Lock | None = None,
        notify_lock: Lock | None = None,
        poll_interval: float = 2.0,
        timeout: float = 600.0,
        stale_lock_seconds: float = STALE_LOCK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dir = Path(approvals_dir).expanduser()
        self.notifier = notifier or notify_restart
        self.performer_lock = performer_lock or ExclusiveFileLock(self.dir / RESTART_LOCK, stale_lock_seconds)
        self.notify_lock = notify_lock or ExclusiveFileLock(self.dir / NOTIFY_LOCK, stale_lock_seconds)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    @property
    def approval_path(self) -> Path:
        return self.dir / APPROVAL_FILE

    @property
    def done_path(self) -> Path:
        return self.dir / DONE_FILE

    def read_approval(self) -> dict[str, Any] | None:
        data = read_json_if_exists(self.approval_path)
        return data if isinstance(data, dict) else None

    def write_approval(self, approved_at: int | None = None) -> int:
        stamp = now_ms() if approved_at is None else approved_at
        write_json_atomic(self.approval_path, {"approved_at": stamp})
        return stamp

    def read_done(self) -> dict[str, Any] | None:
        data = read_json_if_exists(self.done_path)
        return data if isinstance(data, dict) else None

    def write_done(self, *, done_at: int | None = None, approved_at: int | None = None) -> None:
        payload: dict[str, Any] = {"done_at": now_ms() if done_at is None else done_at}
        if approved_at is not None:
            payload["approved_at"] = approved_at
        write_json_atomic(self.done_path, payload)

    def clear_files(self, *, preserve_done: bool = True) -> None:
        for name in (APPROVAL_FILE, RESTART_LOCK, NOTIFY_LOCK):
            remove_file(self.dir / name)
        if not preserve_done:
            remove_file(self.done_path)

    def _ask_human(self, title: str, message: str) -> bool:
        try:
            answer = self.notifier(title, message)
        except OSError as exc:
            logger.warning("[restart] notifier failed: %s", exc)
            answer = None
        if answer is None:
            logger.info("[restart] no notifier reachable; treating as denied")
            return False
        if not answer:
            logger.info("[restart] approval dismissed")
        return bool(answer)

    def wait_for_approval(
        self,
        run_id: str,
        *,
        title: str | None = None,
        message: str | None = None,
        pre_approved: bool = False,
        is_canceled: Callable[[], bool] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ApprovalResult:
        """Block until this caller should restart, another caller has restarted,
        the caller cancels, or the bounded wait runs out.

        ``pre_approved`` records an approval at wait start (the caller already
        holds consent, e.g. a resume with the kill override).
        """
        self.dir.mkdir(parents=True, exist_ok=True)
        wait_since = now_ms()
        title = title or "Approve browser restart"
        message = message or f"Oracle run {run_id} needs to restart the browser to continue."
        deadline = self._clock() + self.timeout
        notified = False
        status_at: float | None = None

        if pre_approved:
            self.write_approval(wait_since)
            logger.info("[restart] %s pre-approved restart", run_id)

        while True:
            if is_canceled is not None and is_canceled():
                self.notify_lock.release()
                return ApprovalResult(ACTION_CANCELED)

            if on_status is not None and (status_at is None or self._clock() - status_at >= STATUS_THROTTLE_SECONDS):
                on_status("waiting for approval to restart the browser")
                status_at = self._clock()

            done = self.read_done()
            if is_fresh_done(done, wait_since):
                logger.info("[restart] %s restart already completed by another run", run_id)
                self.notify_lock.release()
                return ApprovalResult(ACTION_DONE, done_at=_timestamp(done, "done_at"))

            approved_at = _timestamp(self.read_approval(), "approved_at")
            if approved_at is not None and approved_at >= wait_since:
                if self.performer_lock.try_acquire():
                    logger.info("[restart] %s acquired restart role", run_id)
                    return ApprovalResult(ACTION_RESTART, approved_at=approved_at)
                # Someone else is restarting; keep polling for done.
            elif not notified:
                notified = True
                if self.notify_lock.try_acquire():
                    logger.info("[restart] %s asking for approval", run_id)
                    if self._ask_human(title, message):
                        approved_at = self.write_approval()
                        # The approving caller proceeds straight to the restart.
                        if self.performer_lock.try_acquire():
                            logger.info("[restart] %s approved; acquired restart role", run_id)
                            return ApprovalResult(ACTION_RESTART, approved_at=approved_at)

            if self._clock() >= deadline:
                logger.info("[restart] %s approval wait timed out", run_id)
                self.notify_lock.release()
                return ApprovalResult(ACTION_TIMEOUT)
            self._sleep(self.poll_interval)

    def mark_restart_done(self, approved_at: int | None = None) -> None:
        """Publish completion, then retire the approval and both locks.

        The done record stays behind so slower waiters still observe it.
        """
        self.write_done(approved_at=approved_at)
        self.clear_files(preserve_done=True)
        self.performer_lock.release()
        self.notify_lock.release()
        logger.info("[restart] restart marked done")

    def abandon(self) -> None:
        """Give up the restart role without publishing completion."""
        self.performer_lock.release()
        self.notify_lock.release()


def approve_restart(approvals_dir: str | Path) -> int:
    """Record a human approval out-of-band (no notifier involved)."""
    return RestartCoordinator(approvals_dir).write_approval()


__all__ = [
    "ACTION_CANCELED",
    "ACTION_DONE",
    "ACTION_RESTART",
    "ACTION_TIMEOUT",
    "APPROVAL_FILE",
    "ApprovalResult",
    "DONE_FILE",
    "NOTIFY_LOCK",
    "RESTART_LOCK",
    "RestartCoordinator",
    "approve_restart",
    "is_fresh_done",
]
