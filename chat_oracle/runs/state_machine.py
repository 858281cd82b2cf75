"""
Run lifecycle state machine.

    pending -> running -> {needs_user | completed | failed}
    pending -> needs_user            (login wall before the page is ready)
    pending | running | needs_user -> canceled
    needs_user -> running            (resume)
    any non-terminal -> failed       (unrecoverable error)

``completed``, ``failed`` and ``canceled`` are terminal: once written, the
record's state and text never change again. The machine only talks to an
injected store (``get``/``put``/``locked``); it holds no filesystem state of
its own. Every change re-reads the record under the store's per-run lock, so
a terminal write by one process is never overwritten by another.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Any, Protocol

from ..errors import INPUT, NEEDS_USER as NEEDS_USER_KIND, NOT_FOUND, TERMINAL_CONFLICT, OracleError
from .models import (
    CANCELED,
    COMPLETED,
    FAILED,
    NEEDS_USER,
    NEEDS_USER_REASONS,
    PENDING,
    RUNNING,
    STAGES,
    TERMINAL_STATES,
    RunRecord,
)

logger = logging.getLogger("chat_oracle.runs")

TRANSITIONS: dict[str, frozenset[str]] = {
    # A login wall can be hit before the page ever becomes ready.
    PENDING: frozenset({RUNNING, NEEDS_USER, FAILED, CANCELED}),
    RUNNING: frozenset({NEEDS_USER, COMPLETED, FAILED, CANCELED}),
    NEEDS_USER: frozenset({RUNNING, FAILED, CANCELED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
    CANCELED: frozenset(),
}

_MUTABLE_FIELDS = frozenset(
    {
        "stage",
        "message",
        "conversation_ref",
        "response_text",
        "reasoning_text",
        "attempt",
        "worker_pid",
        "needs_user_reason",
        "follow_ups",
    }
)


class RecordStore(Protocol):
    def get(self, run_id: str) -> RunRecord | None: ...

    def put(self, record: RunRecord) -> None: ...

    def locked(self, run_id: str) -> AbstractContextManager[None]: ...


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class RunStateMachine:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def get(self, run_id: str) -> RunRecord:
        record = self.store.get(run_id)
        if record is None:
            raise OracleError(NOT_FOUND, f"Run {run_id} not found", "Check the run id; expired runs are removed")
        return record

    def _conflict(self, record: RunRecord, action: str) -> OracleError:
        return OracleError(
            TERMINAL_CONFLICT,
            f"Run {record.run_id} is already {record.state}; cannot {action}",
            "Start a follow-up run to continue the conversation",
            {"state": record.state},
        )

    def _apply(self, record: RunRecord, changes: dict[str, Any]) -> None:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise OracleError(INPUT, f"Unknown run fields: {', '.join(sorted(unknown))}")
        if changes.get("stage") not in (None, *STAGES):
            raise OracleError(INPUT, f"Unknown stage: {changes['stage']}")
        for name, value in changes.items():
            if value is not None or name in {"needs_user_reason", "worker_pid"}:
                setattr(record, name, value)

    def transition(self, run_id: str, target: str, **changes: Any) -> RunRecord:
        with self.store.locked(run_id):
            record = self.get(run_id)
            if record.state in TERMINAL_STATES:
                raise self._conflict(record, f"move to {target}")
            if target != record.state and not can_transition(record.state, target):
                raise OracleError(INPUT, f"Illegal transition {record.state} -> {target} for run {run_id}")
            previous = record.state
            record.state = target
            if previous == NEEDS_USER and target == RUNNING:
                # Resuming clears the reason the run was parked.
                record.error = None
                record.needs_user_reason = None
            self._apply(record, changes)
            self.store.put(record)
        if previous != target:
            logger.info("[state] %s %s -> %s", run_id, previous, target)
        return record

    def update(self, run_id: str, **changes: Any) -> RunRecord:
        """Change fields without changing state (progress, heartbeat)."""
        with self.store.locked(run_id):
            record = self.get(run_id)
            if record.state in TERMINAL_STATES:
                raise self._conflict(record, "update")
            self._apply(record, changes)
            self.store.put(record)
        return record

    def mark_running(self, run_id: str, *, stage: str = "waiting", message: str = "", **changes: Any) -> RunRecord:
        return self.transition(run_id, RUNNING, stage=stage, message=message, **changes)

    def mark_needs_user(self, run_id: str, reason: str, message: str, suggestion: str, **changes: Any) -> RunRecord:
        if reason not in NEEDS_USER_REASONS:
            raise OracleError(INPUT, f"Unknown needs-user reason: {reason}")
        with self.store.locked(run_id):
            record = self.get(run_id)
            if record.state in TERMINAL_STATES:
                raise self._conflict(record, "request user action")
            if not can_transition(record.state, NEEDS_USER) and record.state != NEEDS_USER:
                raise OracleError(INPUT, f"Illegal transition {record.state} -> {NEEDS_USER} for run {run_id}")
            previous = record.state
            record.state = NEEDS_USER
            record.needs_user_reason = reason
            record.message = message
            record.error = OracleError(NEEDS_USER_KIND, message, suggestion, {"reason": reason}).to_dict()
            self._apply(record, changes)
            self.store.put(record)
        logger.info("[state] %s %s -> needs_user (%s)", run_id, previous, reason)
        return record

    def complete(
        self,
        run_id: str,
        response_text: str,
        reasoning_text: str = "",
        *,
        conversation_ref: str | None = None,
    ) -> RunRecord:
        return self._finish(
            run_id,
            COMPLETED,
            None,
            stage="cleanup",
            message="Completed",
            response_text=response_text,
            reasoning_text=reasoning_text,
            conversation_ref=conversation_ref,
        )

    def fail(self, run_id: str, error: OracleError, **changes: Any) -> RunRecord:
        changes.setdefault("message", error.message)
        return self._finish(run_id, FAILED, error, **changes)

    def cancel(self, run_id: str, message: str = "Canceled by user") -> RunRecord:
        return self._finish(run_id, CANCELED, None, message=message)

    def _finish(self, run_id: str, target: str, error: OracleError | None, **changes: Any) -> RunRecord:
        with self.store.locked(run_id):
            record = self.get(run_id)
            if record.state in TERMINAL_STATES:
                raise self._conflict(record, f"move to {target}")
            if not can_transition(record.state, target):
                raise OracleError(INPUT, f"Illegal transition {record.state} -> {target} for run {run_id}")
            previous = record.state
            record.state = target
            record.error = error.to_dict() if error is not None else None
            record.needs_user_reason = None
            record.worker_pid = None
            self._apply(record, changes)
            self.store.put(record)
        logger.info("[state] %s %s -> %s", run_id, previous, target)
        return record


__all__ = ["RunStateMachine", "TRANSITIONS", "can_transition"]
