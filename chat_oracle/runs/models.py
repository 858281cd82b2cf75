"""Run record and launch options.

Both are persisted as JSON documents inside the run directory; field names on
disk match the attribute names.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

PENDING = "pending"
RUNNING = "running"
NEEDS_USER = "needs_user"
COMPLETED = "completed"
FAILED = "failed"
CANCELED = "canceled"

RUN_STATES = (PENDING, RUNNING, NEEDS_USER, COMPLETED, FAILED, CANCELED)
TERMINAL_STATES = frozenset({COMPLETED, FAILED, CANCELED})
# Never garbage-collected: a worker may own them or a human is expected to act.
ACTIVE_STATES = frozenset({PENDING, RUNNING, NEEDS_USER})

STAGES = ("init", "launch", "login", "navigate", "submit", "waiting", "extract", "recovery", "cleanup")

REASON_LOGIN = "login"
REASON_CHALLENGE = "challenge"
REASON_KILL_BROWSER = "kill-browser-required"
REASON_RESTART_APPROVAL = "restart-approval"
NEEDS_USER_REASONS = (REASON_LOGIN, REASON_CHALLENGE, REASON_KILL_BROWSER, REASON_RESTART_APPROVAL)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> float | None:
    """ISO-8601 timestamp -> epoch seconds (None when unparseable)."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _base36(value: int) -> str:
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = _BASE36[rem] + out
    return out or "0"


def new_run_id() -> str:
    """Time-ordered id: base36 milliseconds plus 8 random hex chars."""
    return f"{_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class RunRecord:
    run_id: str
    prompt: str
    state: str = PENDING
    stage: str = "init"
    message: str = ""
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    follow_ups: list[str] = field(default_factory=list)
    conversation_ref: str | None = None
    response_text: str = ""
    reasoning_text: str = ""
    error: dict[str, Any] | None = None
    needs_user_reason: str | None = None
    attempt: int = 0
    parent_run_id: str | None = None
    worker_pid: int | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        if not isinstance(data, dict) or not data.get("run_id"):
            raise ValueError("run record requires run_id")
        payload = _known(cls, data)
        payload.setdefault("prompt", "")
        payload["follow_ups"] = list(payload.get("follow_ups") or [])
        return cls(**payload)


@dataclass
class RunOptions:
    """Launch settings frozen when the run is started."""

    base_url: str
    poll_interval: float = 0.5
    run_timeout: float = 4 * 60 * 60.0
    stall_timeout: float = 5 * 60.0
    max_attempts: int = 2
    allow_kill: bool = False
    attachments: list[str] = field(default_factory=list)
    target_id: str | None = None
    debug_port: int | None = None
    # Number of assistant turns on the page before our prompt was sent.
    baseline_assistant_count: int | None = None
    # Set before the prompt is typed; a resumed worker never types it again.
    prompt_submitted: bool = False
    # One resend is allowed after a reply fails.
    resubmitted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunOptions:
        payload = _known(cls, data or {})
        if not payload.get("base_url"):
            raise ValueError("run options require base_url")
        payload["attachments"] = list(payload.get("attachments") or [])
        return cls(**payload)


__all__ = [
    "ACTIVE_STATES",
    "CANCELED",
    "COMPLETED",
    "FAILED",
    "NEEDS_USER",
    "PENDING",
    "RUNNING",
    "RUN_STATES",
    "RunOptions",
    "RunRecord",
    "TERMINAL_STATES",
    "new_run_id",
    "parse_iso",
    "utc_now",
]
