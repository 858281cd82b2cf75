from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from chat_oracle import commands
from chat_oracle.config import OracleConfig
from chat_oracle.errors import INPUT, INTERNAL, NOT_FOUND, TERMINAL_CONFLICT, OracleError
from chat_oracle.runs.state_machine import RunStateMachine
from chat_oracle.runs.store import FileRunStore

DEAD_PID = 2**22 + 17


@pytest.fixture()
def config(tmp_path) -> OracleConfig:  # noqa: ANN001
    return OracleConfig(
        runs_root=str(tmp_path / "runs"),
        approvals_dir=str(tmp_path / "approvals"),
        profile_path=str(tmp_path / "chrome"),
        base_url="https://chat.example/",
    )


def _finish(config: OracleConfig, run_id: str, text: str, ref: str | None) -> None:
    machine = RunStateMachine(FileRunStore(config.runs_root))
    machine.mark_running(run_id)
    machine.complete(run_id, text, conversation_ref=ref)


def test_start_writes_intent_and_spawns(config: OracleConfig) -> None:
    spawned: list[Path] = []

    def fake_spawn(run_path: Path, cfg: OracleConfig) -> int:
        assert cfg is config
        spawned.append(run_path)
        return 4242

    run_id = commands.start("Hello", config=config, spawn=fake_spawn)

    run_path = Path(config.runs_root) / run_id
    assert spawned == [run_path]
    status = json.loads((run_path / "status.json").read_text(encoding="utf-8"))
    assert status["state"] == "pending"
    assert status["prompt"] == "Hello"
    options = json.loads((run_path / "run.json").read_text(encoding="utf-8"))
    assert options["base_url"] == "https://chat.example/"
    assert options["allow_kill"] is False


@pytest.mark.parametrize("prompt", ["", "   \n"])
def test_start_rejects_empty_prompt(config: OracleConfig, prompt: str) -> None:
    with pytest.raises(OracleError) as exc_info:
        commands.start(prompt, config=config, spawn=None)
    assert exc_info.value.kind == INPUT


def test_start_checks_attachments(config: OracleConfig, tmp_path) -> None:  # noqa: ANN001
    with pytest.raises(OracleError) as exc_info:
        commands.start("Read this", config=config, attachments=[str(tmp_path / "missing.txt")], spawn=None)
    assert exc_info.value.kind == INPUT

    notes = tmp_path / "notes.txt"
    notes.write_text("hi", encoding="utf-8")

    def resolver(prompt: str) -> tuple[str, list[str]]:
        return prompt.replace("@notes.txt", "notes.txt"), [str(notes)]

    run_id = commands.start("Summarize @notes.txt", config=config, resolver=resolver, spawn=None)
    store = FileRunStore(config.runs_root)
    assert store.get(run_id).prompt == "Summarize notes.txt"
    assert store.load_options(run_id).attachments == [str(notes)]


def test_follow_up_continues_parent_conversation(config: OracleConfig) -> None:
    parent = commands.start("First question", config=config, spawn=None)
    _finish(config, parent, "First answer", "https://chat.example/c/conv-1")

    child = commands.start("And then?", parent, config=config, spawn=None)
    record = commands.status(child, config=config)

    assert record.parent_run_id == parent
    assert record.conversation_ref == "https://chat.example/c/conv-1"
    assert record.follow_ups == ["First question", "And then?"]
    assert record.state == "pending"

    _finish(config, child, "Second answer", "https://chat.example/c/conv-1")
    grandchild = commands.start("Last one", child, config=config, spawn=None)
    assert commands.status(grandchild, config=config).follow_ups == ["First question", "And then?", "Last one"]
    # The parent is untouched.
    assert commands.result(parent, config=config) == "First answer"


def test_follow_up_requires_finished_parent(config: OracleConfig) -> None:
    parent = commands.start("First question", config=config, spawn=None)
    with pytest.raises(OracleError) as exc_info:
        commands.start("Too soon", parent, config=config, spawn=None)
    assert exc_info.value.kind == INPUT

    with pytest.raises(OracleError) as exc_info:
        commands.start("Who?", "no-such-run", config=config, spawn=None)
    assert exc_info.value.kind == NOT_FOUND


def test_conversation_url_is_used_directly(config: OracleConfig) -> None:
    run_id = commands.start("Hi again", "https://chat.example/c/xyz", config=config, spawn=None)
    record = commands.status(run_id, config=config)
    assert record.conversation_ref == "https://chat.example/c/xyz"
    assert record.parent_run_id is None


def test_status_of_unknown_run(config: OracleConfig) -> None:
    with pytest.raises(OracleError) as exc_info:
        commands.status("nope", config=config)
    assert exc_info.value.kind == NOT_FOUND


def test_cancel_with_live_worker_only_requests(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    store = FileRunStore(config.runs_root)
    RunStateMachine(store).mark_running(run_id, worker_pid=os.getpid())

    record = commands.cancel(run_id, config=config)

    assert record.state == "running"
    assert store.cancel_requested(run_id) is True


def test_cancel_without_worker_finalizes(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    store = FileRunStore(config.runs_root)
    RunStateMachine(store).mark_needs_user(run_id, "login", "Login required", "Log in")

    record = commands.cancel(run_id, config=config)

    assert record.state == "canceled"
    with pytest.raises(OracleError) as exc_info:
        commands.cancel(run_id, config=config)
    assert exc_info.value.kind == TERMINAL_CONFLICT


def test_watch_returns_on_timeout(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    RunStateMachine(FileRunStore(config.runs_root)).mark_running(run_id, worker_pid=os.getpid())
    now = [0.0]

    def sleep(seconds: float) -> None:
        now[0] += seconds

    record = commands.watch(run_id, timeout=3.0, config=config, poll=1.0, clock=lambda: now[0], sleep=sleep)

    assert record.state == "running"
    assert now[0] == 3.0


def test_watch_fails_run_whose_worker_died(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    RunStateMachine(FileRunStore(config.runs_root)).mark_running(run_id, worker_pid=DEAD_PID)

    record = commands.watch(run_id, config=config)

    assert record.state == "failed"
    assert record.error["kind"] == INTERNAL


def test_resume_rules(config: OracleConfig) -> None:
    spawned: list[Path] = []
    run_id = commands.start("Hello", config=config, spawn=None)
    store = FileRunStore(config.runs_root)
    machine = RunStateMachine(store)
    machine.mark_running(run_id, worker_pid=os.getpid())

    # A live worker already owns the run.
    commands.resume(run_id, config=config, spawn=lambda path, _cfg: spawned.append(path) or 1)
    assert spawned == []

    machine.mark_needs_user(run_id, "kill-browser-required", "Browser unresponsive", "Approve", worker_pid=None)
    store.request_cancel(run_id)
    record = commands.resume(run_id, allow_kill=True, config=config, spawn=lambda path, _cfg: spawned.append(path) or 1)

    assert record.state == "running"
    assert spawned == [store.run_path(run_id)]
    assert store.load_options(run_id).allow_kill is True
    assert store.cancel_requested(run_id) is False

    machine.complete(run_id, "done")
    with pytest.raises(OracleError) as exc_info:
        commands.resume(run_id, config=config, spawn=None)
    assert exc_info.value.kind == TERMINAL_CONFLICT


def test_approve_restart_writes_record(config: OracleConfig) -> None:
    stamp = commands.approve_restart(config=config)
    data = json.loads((Path(config.approvals_dir) / "restart-approval.json").read_text(encoding="utf-8"))
    assert data == {"approved_at": stamp}


def test_cleanup_runs_keeps_fresh_runs(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    _finish(config, run_id, "Echo: Hello", None)
    assert commands.cleanup_runs(config=config) == []
    assert commands.cleanup_runs(ttl=0.0, config=config) == [run_id]


def test_result_prefers_result_file(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    with pytest.raises(OracleError) as exc_info:
        commands.result(run_id, config=config)
    assert exc_info.value.kind == NOT_FOUND

    _finish(config, run_id, "Echo: Hello", None)
    assert commands.result(run_id, config=config) == "Echo: Hello"
    FileRunStore(config.runs_root).write_result(run_id, "Echo: Hello\n\n(from file)")
    assert commands.result(run_id, config=config).endswith("(from file)")


def test_thinking_returns_only_unread_text(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=None)
    machine = RunStateMachine(FileRunStore(config.runs_root))
    machine.mark_running(run_id, reasoning_text="Step one.")
    assert commands.thinking(run_id, config=config) == "Step one."
    machine.update(run_id, reasoning_text="Step one. Step two.")
    assert commands.thinking(run_id, config=config) == " Step two."
    assert commands.thinking(run_id, config=config) == ""
    assert commands.thinking(run_id, full=True, config=config) == "Step one. Step two."


def test_config_survives_environment_round_trip(config: OracleConfig, monkeypatch) -> None:  # noqa: ANN001
    config.headless = True
    config.stall_timeout = 120.0
    config.notificli_path = "/opt/notificli"
    for key, value in config.to_env().items():
        monkeypatch.setenv(key, value)

    rebuilt = OracleConfig.from_env()

    assert rebuilt.runs_root == config.runs_root
    assert rebuilt.approvals_dir == config.approvals_dir
    assert rebuilt.base_url == config.base_url
    assert rebuilt.headless is True
    assert rebuilt.stall_timeout == pytest.approx(120.0)
    assert rebuilt.notificli_path == "/opt/notificli"
    assert rebuilt.runs_ttl == pytest.approx(config.runs_ttl)


def test_watch_notices_a_spawned_worker_that_died(config: OracleConfig) -> None:
    run_id = commands.start("Hello", config=config, spawn=lambda _path, _cfg: DEAD_PID)
    assert commands.status(run_id, config=config).worker_pid == DEAD_PID
    now = [0.0]

    def sleep(seconds: float) -> None:
        now[0] += seconds

    record = commands.watch(run_id, timeout=3600.0, config=config, clock=lambda: now[0], sleep=sleep)

    assert record.state == "failed"
    assert record.error["kind"] == INTERNAL
    assert now[0] == 0.0


def test_failed_spawn_fails_the_run(config: OracleConfig) -> None:
    def broken_spawn(_path: Path, _cfg: OracleConfig) -> int:
        raise OracleError(INTERNAL, "Failed to start worker: no interpreter")

    with pytest.raises(OracleError) as exc_info:
        commands.start("Hello", config=config, spawn=broken_spawn)
    assert exc_info.value.kind == INTERNAL

    (record,) = FileRunStore(config.runs_root).list()
    assert record.state == "failed"
    assert record.error["message"].startswith("Failed to start worker")
