from __future__ import annotations

import json
import os
import threading
import time

from chat_oracle.restart.approval import (
    ACTION_CANCELED,
    ACTION_DONE,
    ACTION_RESTART,
    ACTION_TIMEOUT,
    RestartCoordinator,
    approve_restart,
    is_fresh_done,
    now_ms,
)
from chat_oracle.restart.locks import ExclusiveFileLock, InMemoryLock

# Above the kernel's pid_max, so never a live process.
DEAD_PID = 2**22 + 17


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self, answer: bool | None) -> None:
        self.answer = answer
        self.calls: list[tuple[str, str]] = []

    def __call__(self, title: str, message: str) -> bool | None:
        self.calls.append((title, message))
        return self.answer


def _coordinator(tmp_path, notifier, clock: FakeClock | None = None, **kwargs) -> RestartCoordinator:  # noqa: ANN001, ANN003
    clock = clock or FakeClock()
    kwargs.setdefault("timeout", 5.0)
    return RestartCoordinator(
        tmp_path,
        notifier=notifier,
        poll_interval=1.0,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def test_self_approval_takes_restart_role(tmp_path) -> None:  # noqa: ANN001
    notifier = RecordingNotifier(True)
    coordinator = _coordinator(tmp_path, notifier)

    result = coordinator.wait_for_approval("run-1")

    assert result.action == ACTION_RESTART
    assert result.approved_at is not None
    assert len(notifier.calls) == 1
    assert "run-1" in notifier.calls[0][1]
    assert (tmp_path / "restart-approval.json").exists()
    assert (tmp_path / "restart.lock").exists()

    coordinator.mark_restart_done(result.approved_at)

    done = json.loads((tmp_path / "restart-done.json").read_text(encoding="utf-8"))
    assert done["approved_at"] == result.approved_at
    assert not (tmp_path / "restart-approval.json").exists()
    assert not (tmp_path / "restart.lock").exists()
    assert not (tmp_path / "restart-notify.lock").exists()


def test_denied_approval_times_out_after_one_prompt(tmp_path) -> None:  # noqa: ANN001
    notifier = RecordingNotifier(False)
    clock = FakeClock()
    coordinator = _coordinator(tmp_path, notifier, clock)

    result = coordinator.wait_for_approval("run-1")

    assert result.action == ACTION_TIMEOUT
    assert len(notifier.calls) == 1
    assert clock.now >= 5.0
    assert not (tmp_path / "restart-notify.lock").exists()
    assert not (tmp_path / "restart-approval.json").exists()


def test_unreachable_notifier_counts_as_denied(tmp_path) -> None:  # noqa: ANN001
    coordinator = _coordinator(tmp_path, RecordingNotifier(None))
    assert coordinator.wait_for_approval("run-1").action == ACTION_TIMEOUT


def test_notifier_os_error_counts_as_denied(tmp_path) -> None:  # noqa: ANN001
    def broken(_title: str, _message: str) -> bool:
        raise OSError("no display")

    coordinator = _coordinator(tmp_path, broken)
    assert coordinator.wait_for_approval("run-1").action == ACTION_TIMEOUT


def test_stale_records_never_satisfy_new_waiter(tmp_path) -> None:  # noqa: ANN001
    old = now_ms() - 60 * 60 * 1000
    coordinator = _coordinator(tmp_path, RecordingNotifier(False))
    coordinator.write_approval(old)
    coordinator.write_done(done_at=old, approved_at=old)

    result = coordinator.wait_for_approval("run-1")

    assert result.action == ACTION_TIMEOUT
    assert not is_fresh_done(coordinator.read_done(), now_ms())


def test_fresh_done_short_circuits(tmp_path) -> None:  # noqa: ANN001
    notifier = RecordingNotifier(True)
    coordinator = _coordinator(tmp_path, notifier)
    coordinator.write_done(done_at=now_ms() + 60_000)

    result = coordinator.wait_for_approval("run-1")

    assert result.action == ACTION_DONE
    assert notifier.calls == []


def test_out_of_band_approval_is_picked_up(tmp_path) -> None:  # noqa: ANN001
    notifier = RecordingNotifier(False)
    clock = FakeClock()
    coordinator = _coordinator(tmp_path, notifier, clock, timeout=30.0)

    def sleep_then_approve(seconds: float) -> None:
        clock.now += seconds
        if clock.now == 2.0:
            approve_restart(tmp_path)

    coordinator._sleep = sleep_then_approve
    result = coordinator.wait_for_approval("run-1")

    assert result.action == ACTION_RESTART
    assert len(notifier.calls) == 1


def test_pre_approved_skips_notification(tmp_path) -> None:  # noqa: ANN001
    notifier = RecordingNotifier(True)
    coordinator = _coordinator(tmp_path, notifier)

    result = coordinator.wait_for_approval("run-1", pre_approved=True)

    assert result.action == ACTION_RESTART
    assert notifier.calls == []


def test_cancel_releases_notify_role(tmp_path) -> None:  # noqa: ANN001
    coordinator = _coordinator(tmp_path, RecordingNotifier(False))
    flags = iter([False, True])

    result = coordinator.wait_for_approval("run-1", is_canceled=lambda: next(flags, True))

    assert result.action == ACTION_CANCELED
    assert not (tmp_path / "restart-notify.lock").exists()


def test_concurrent_waiters_restart_exactly_once(tmp_path) -> None:  # noqa: ANN001
    barrier = threading.Barrier(2)
    results: dict[str, str] = {}
    restarts: list[str] = []

    def approve_after_a_moment(_title: str, _message: str) -> bool:
        time.sleep(0.2)
        return True

    def waiter(run_id: str) -> None:
        coordinator = RestartCoordinator(tmp_path, notifier=approve_after_a_moment, poll_interval=0.05, timeout=10.0)
        barrier.wait()
        result = coordinator.wait_for_approval(run_id)
        results[run_id] = result.action
        if result.action == ACTION_RESTART:
            restarts.append(run_id)
            time.sleep(0.1)
            coordinator.mark_restart_done(result.approved_at)

    threads = [threading.Thread(target=waiter, args=(name,)) for name in ("run-a", "run-b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=15)

    assert len(restarts) == 1
    assert sorted(results.values()) == [ACTION_DONE, ACTION_RESTART]


def test_file_lock_is_exclusive(tmp_path) -> None:  # noqa: ANN001
    first = ExclusiveFileLock(tmp_path / "restart.lock")
    second = ExclusiveFileLock(tmp_path / "restart.lock")

    assert first.try_acquire() is True
    assert second.try_acquire() is False
    assert first.owner()["pid"] == os.getpid()

    first.release()
    assert second.try_acquire() is True
    second.release()
    assert not (tmp_path / "restart.lock").exists()


def test_lock_with_dead_owner_is_broken(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "restart.lock"
    path.write_text(json.dumps({"pid": DEAD_PID, "created_at": now_ms()}), encoding="utf-8")

    lock = ExclusiveFileLock(path)
    assert lock.try_acquire() is True
    assert lock.owner()["pid"] == os.getpid()
    assert list(tmp_path.glob("*.stale.*")) == []


def test_old_lock_is_broken_even_if_owner_alive(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "restart.lock"
    path.write_text(json.dumps({"pid": os.getpid(), "created_at": now_ms() - 700_000}), encoding="utf-8")

    assert ExclusiveFileLock(path, stale_after=600).try_acquire() is True


def test_fresh_lock_of_live_owner_is_kept(tmp_path) -> None:  # noqa: ANN001
    path = tmp_path / "restart.lock"
    path.write_text(json.dumps({"pid": os.getpid(), "created_at": now_ms()}), encoding="utf-8")

    assert ExclusiveFileLock(path).try_acquire() is False
    assert json.loads(path.read_text(encoding="utf-8"))["pid"] == os.getpid()


def test_in_memory_lock() -> None:
    registry: set[str] = set()
    first = InMemoryLock("restart", registry)
    second = InMemoryLock("restart", registry)
    other = InMemoryLock("notify", registry)

    assert first.try_acquire() is True
    assert second.try_acquire() is False
    assert other.try_acquire() is True
    first.release()
    assert second.try_acquire() is True
