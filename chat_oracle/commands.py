"""
Caller-side commands for chat-oracle runs.

A caller never talks to the browser. ``start`` writes the run's intent to
disk and spawns a detached worker; every other command reads (or, when no
worker owns the run, writes) the persisted run record. Any process with the
same runs root can pick up a run started elsewhere.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path

from .config import OracleConfig
from .errors import INPUT, INTERNAL, NOT_FOUND, TERMINAL_CONFLICT, OracleError
from .fs_utils import pid_alive
from .restart.approval import approve_restart as _write_approval
from .runs import paths
from .runs.cleanup import cleanup_runs_root
from .runs.models import COMPLETED, NEEDS_USER, RUNNING, TERMINAL_STATES, RunOptions, RunRecord, new_run_id
from .runs.state_machine import RunStateMachine
from .runs.store import FileRunStore
from .runs.thinking import read_increment

logger = logging.getLogger("chat_oracle.commands")

PACKAGE_ROOT = Path(__file__).resolve().parent.parent

PromptResolver = Callable[[str], tuple[str, list[str]]]
Spawner = Callable[[Path, OracleConfig], int]


def resolve_prompt(prompt: str) -> tuple[str, list[str]]:
    """Default resolver: the prompt is sent as written, with no attachments."""
    return prompt, []


def spawn_worker(run_path: Path, config: OracleConfig) -> int:
    """Start a detached worker for ``run_path`` and return its pid."""
    cmd = [sys.executable, "-m", "chat_oracle.worker", "--run-dir", str(run_path)]
    env = {**os.environ, **config.to_env()}
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(PACKAGE_ROOT), env.get("PYTHONPATH", "")) if p)
    run_path.mkdir(parents=True, exist_ok=True)
    try:
        with open(paths.log_path(run_path), "ab", buffering=0) as log_fh:
            proc = subprocess.Popen(
                cmd,
                stdout=log_fh,
                stderr=log_fh,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
                env=env,
            )
    except OSError as exc:
        raise OracleError(INTERNAL, f"Failed to start worker: {exc}", "Check the Python interpreter and runs root") from exc
    logger.info("[commands] worker pid=%s run=%s", proc.pid, run_path.name)
    return proc.pid


def _config(config: OracleConfig | None) -> OracleConfig:
    return config or OracleConfig.from_env()


def _store(config: OracleConfig) -> FileRunStore:
    return FileRunStore(config.runs_root)


def _require(store: FileRunStore, run_id: str) -> RunRecord:
    record = store.get(run_id)
    if record is None:
        raise OracleError(NOT_FOUND, f"Run {run_id} not found", "Check the run id; expired runs are removed")
    return record


def _worker_alive(record: RunRecord) -> bool:
    return record.worker_pid is not None and pid_alive(record.worker_pid)


def _finalize(machine: RunStateMachine, run_id: str, action: Callable[[], RunRecord]) -> RunRecord:
    try:
        return action()
    except OracleError as exc:
        if exc.kind != TERMINAL_CONFLICT:
            raise
        # The worker finished between our read and write.
        return machine.get(run_id)


def _launch(machine: RunStateMachine, store: FileRunStore, run_id: str, config: OracleConfig, spawn: Spawner) -> None:
    """Spawn the worker and record its pid so a worker that dies early is noticed."""
    try:
        pid = spawn(store.run_path(run_id), config)
    except OracleError as exc:
        _finalize(machine, run_id, lambda: machine.fail(run_id, exc))
        raise
    _finalize(machine, run_id, lambda: machine.update(run_id, worker_pid=pid))


def _follow_up_source(store: FileRunStore, ref: str) -> RunRecord | None:
    if "://" in ref:
        return None
    if not paths.valid_run_id(ref):
        raise OracleError(INPUT, f"Invalid conversation reference: {ref!r}", "Pass a run id or a conversation URL")
    parent = store.get(ref)
    if parent is None:
        raise OracleError(NOT_FOUND, f"Run {ref} not found", "Pass the id of a finished run or a conversation URL")
    if parent.state not in TERMINAL_STATES:
        raise OracleError(
            INPUT,
            f"Run {ref} is still {parent.state}",
            "Wait for it to finish before sending a follow-up",
            {"state": parent.state},
        )
    if not parent.conversation_ref:
        raise OracleError(INPUT, f"Run {ref} has no conversation to continue", "Start a new run instead")
    return parent


def start(
    prompt: str,
    conversation_ref: str | None = None,
    *,
    config: OracleConfig | None = None,
    attachments: list[str] | None = None,
    allow_kill: bool = False,
    resolver: PromptResolver = resolve_prompt,
    spawn: Spawner | None = spawn_worker,
) -> str:
    """Create a run and hand it to a background worker.

    ``conversation_ref`` is either a finished run id (the new run continues
    that run's conversation) or a conversation URL. Returns the new run id.
    ``spawn=None`` only records the run.
    """
    config = _config(config)
    if not prompt or not prompt.strip():
        raise OracleError(INPUT, "Prompt is empty", "Pass the text to send")
    text, resolved = resolver(prompt)
    files = [str(Path(p).expanduser()) for p in [*(attachments or []), *resolved]]
    missing = [p for p in files if not Path(p).is_file()]
    if missing:
        raise OracleError(INPUT, f"Attachment not found: {missing[0]}", "Check the file path", {"missing": missing})

    store = _store(config)
    parent = _follow_up_source(store, conversation_ref) if conversation_ref else None
    if parent is not None:
        history = list(parent.follow_ups) or [parent.prompt]
        record = RunRecord(
            run_id=new_run_id(),
            prompt=text,
            follow_ups=[*history, text],
            conversation_ref=parent.conversation_ref,
            parent_run_id=parent.run_id,
        )
    else:
        record = RunRecord(run_id=new_run_id(), prompt=text, conversation_ref=conversation_ref)
    record.message = "Queued"

    options = RunOptions(
        base_url=config.base_url,
        poll_interval=config.poll_interval,
        run_timeout=config.run_timeout,
        stall_timeout=config.stall_timeout,
        max_attempts=config.max_attempts,
        allow_kill=allow_kill,
        attachments=files,
        debug_port=config.cdp_port,
    )
    store.save_options(record.run_id, options)
    store.put(record)
    logger.info("[commands] started run %s (parent=%s)", record.run_id, record.parent_run_id)
    if spawn is not None:
        _launch(RunStateMachine(store), store, record.run_id, config, spawn)
    return record.run_id


def status(run_id: str, *, config: OracleConfig | None = None) -> RunRecord:
    return _require(_store(_config(config)), run_id)


def watch(
    run_id: str,
    timeout: float | None = None,
    *,
    config: OracleConfig | None = None,
    poll: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> RunRecord:
    """Block until the run is terminal or needs a human.

    Returns the latest record when ``timeout`` seconds pass first. A run whose
    worker died without finishing is marked failed.
    """
    store = _store(_config(config))
    machine = RunStateMachine(store)
    deadline = None if timeout is None else clock() + timeout
    while True:
        record = _require(store, run_id)
        if record.terminal or record.state == NEEDS_USER:
            return record
        if record.worker_pid is not None and not pid_alive(record.worker_pid):
            logger.info("[commands] worker %s for %s is gone", record.worker_pid, run_id)
            error = OracleError(INTERNAL, "Worker exited without finishing the run", "Check run.log and start a follow-up run")
            return _finalize(machine, run_id, lambda: machine.fail(run_id, error))
        if deadline is not None and clock() >= deadline:
            return record
        sleep(poll)


def cancel(run_id: str, *, config: OracleConfig | None = None) -> RunRecord:
    """Ask the owning worker to stop; finalize directly when no worker is alive."""
    store = _store(_config(config))
    machine = RunStateMachine(store)
    record = _require(store, run_id)
    if record.terminal:
        raise OracleError(
            TERMINAL_CONFLICT,
            f"Run {run_id} is already {record.state}",
            "Nothing to cancel",
            {"state": record.state},
        )
    store.request_cancel(run_id)
    if _worker_alive(record):
        logger.info("[commands] cancel requested for %s (worker %s)", run_id, record.worker_pid)
        return record
    return _finalize(machine, run_id, lambda: machine.cancel(run_id))


def resume(
    run_id: str,
    allow_kill: bool = False,
    *,
    config: OracleConfig | None = None,
    spawn: Spawner | None = spawn_worker,
) -> RunRecord:
    """Put a parked run back to work.

    ``allow_kill`` pre-approves a browser restart for this run. Resuming a run
    that a live worker still owns is a no-op.
    """
    config = _config(config)
    store = _store(config)
    machine = RunStateMachine(store)
    record = _require(store, run_id)
    if record.terminal:
        raise OracleError(
            TERMINAL_CONFLICT,
            f"Run {run_id} is already {record.state}",
            "Start a follow-up run to continue the conversation",
            {"state": record.state},
        )
    if record.state != NEEDS_USER and _worker_alive(record):
        return record

    options = store.load_options(run_id)
    if allow_kill and not options.allow_kill:
        options.allow_kill = True
        store.save_options(run_id, options)
    store.clear_cancel(run_id)
    target = RUNNING if record.state == NEEDS_USER else record.state
    record = machine.transition(run_id, target, stage="init", message="Resumed")
    logger.info("[commands] resuming %s (allow_kill=%s)", run_id, options.allow_kill)
    if spawn is not None:
        _launch(machine, store, run_id, config, spawn)
        record = machine.get(run_id)
    return record


def result(run_id: str, *, config: OracleConfig | None = None) -> str:
    store = _store(_config(config))
    record = _require(store, run_id)
    if record.state != COMPLETED:
        raise OracleError(
            NOT_FOUND,
            f"Run {run_id} has no result ({record.state})",
            "Wait for the run to complete" if not record.terminal else "Inspect status for the error",
            {"state": record.state},
        )
    text = store.read_result(run_id)
    return record.response_text if text is None else text


def thinking(run_id: str, full: bool = False, *, config: OracleConfig | None = None) -> str:
    """Reasoning text; by default only the part not returned by the previous call."""
    store = _store(_config(config))
    record = _require(store, run_id)
    if full:
        return record.reasoning_text
    return read_increment(store.run_path(run_id), record.reasoning_text)


def approve_restart(approvals_dir: str | None = None, *, config: OracleConfig | None = None) -> int:
    """Record a human approval for a pending browser restart; returns its timestamp (ms)."""
    target = approvals_dir or _config(config).approvals_dir
    stamp = _write_approval(target)
    logger.info("[commands] restart approved at %s", stamp)
    return stamp


def cleanup_runs(ttl: float | None = None, *, config: OracleConfig | None = None) -> list[str]:
    config = _config(config)
    return cleanup_runs_root(config.runs_root, config.runs_ttl if ttl is None else ttl)


__all__ = [
    "approve_restart",
    "cancel",
    "cleanup_runs",
    "resolve_prompt",
    "result",
    "resume",
    "spawn_worker",
    "start",
    "status",
    "thinking",
    "watch",
]
