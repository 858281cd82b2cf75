"""
Response extraction: DOM snapshot -> lifecycle signal.

The chat UI exposes no completion event, only visual affordances: a stop
control while a reply streams, replaced by a copy control on the finished
turn. ``classify`` maps one snapshot to a signal and has no side effects;
``ExtractionProtocol`` adds the cross-poll state (stall tracking, failure
confirmation) on top of it. A truncated reply shows a "Continue generating"
control instead; that is its own signal, and the watcher clicks it.

Completion is decided by the affordance transition only. Text that stops
changing is never treated as done; generations legitimately pause.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

NOT_READY = "not-ready"
NEEDS_LOGIN = "needs-login"
NEEDS_CHALLENGE = "needs-challenge"
STREAMING = "streaming"
CONTINUE_AVAILABLE = "continue-available"
COMPLETED = "completed"
FAILED_NO_OUTPUT = "failed-no-output"
FAILED_WITH_TEXT = "failed-with-text"
STALLED = "stalled"

SIGNALS = (
    NOT_READY,
    NEEDS_LOGIN,
    NEEDS_CHALLENGE,
    STREAMING,
    CONTINUE_AVAILABLE,
    COMPLETED,
    FAILED_NO_OUTPUT,
    FAILED_WITH_TEXT,
    STALLED,
)
FAILURE_SIGNALS = frozenset({FAILED_NO_OUTPUT, FAILED_WITH_TEXT})


def _as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass(slots=True)
class DomSnapshot:
    """What one poll saw on the page."""

    url: str = ""
    ready: bool = True
    composer_present: bool = False
    login_wall: bool = False
    challenge: bool = False
    stop_visible: bool = False
    copy_visible: bool = False
    continue_visible: bool = False
    answer_now_visible: bool = False
    assistant_count: int = 0
    response_text: str = ""
    reasoning_text: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DomSnapshot:
        if not isinstance(data, dict):
            return cls(ready=False)
        return cls(
            url=_as_text(data.get("url")),
            ready=_as_bool(data.get("ready", True)),
            composer_present=_as_bool(data.get("composer_present")),
            login_wall=_as_bool(data.get("login_wall")),
            challenge=_as_bool(data.get("challenge")),
            stop_visible=_as_bool(data.get("stop_visible")),
            copy_visible=_as_bool(data.get("copy_visible")),
            continue_visible=_as_bool(data.get("continue_visible")),
            answer_now_visible=_as_bool(data.get("answer_now_visible")),
            assistant_count=_as_int(data.get("assistant_count")),
            response_text=_as_text(data.get("response_text")),
            reasoning_text=_as_text(data.get("reasoning_text")),
        )

    @property
    def text_size(self) -> int:
        return len(self.response_text) + len(self.reasoning_text)


def classify(snapshot: DomSnapshot, baseline: int = 0) -> str:
    """Classify one snapshot; first match wins.

    ``baseline`` is the number of assistant turns present before the prompt
    was sent, so a finished earlier turn in the same conversation is never
    mistaken for our answer.
    """
    if snapshot.challenge:
        return NEEDS_CHALLENGE
    if snapshot.login_wall:
        return NEEDS_LOGIN
    if not snapshot.ready:
        return NOT_READY
    if snapshot.stop_visible:
        return STREAMING
    if snapshot.assistant_count <= baseline:
        return NOT_READY
    if snapshot.continue_visible:
        return CONTINUE_AVAILABLE
    if snapshot.copy_visible:
        return COMPLETED
    if snapshot.response_text.strip():
        return FAILED_WITH_TEXT
    return FAILED_NO_OUTPUT


@dataclass(slots=True)
class Observation:
    signal: str
    raw_signal: str
    snapshot: DomSnapshot
    grew: bool
    idle_for: float


class ExtractionProtocol:
    """Stateful wrapper around ``classify`` for one watched reply."""

    def __init__(
        self,
        baseline: int = 0,
        *,
        stall_timeout: float = 300.0,
        failure_confirm_polls: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.baseline = baseline
        self.stall_timeout = stall_timeout
        self.failure_confirm_polls = max(1, failure_confirm_polls)
        self._clock = clock
        self._last_progress = clock()
        self._max_size = 0
        self._failure_streak = 0
        self._last_signal = NOT_READY

    @property
    def last_signal(self) -> str:
        return self._last_signal

    def observe(self, snapshot: DomSnapshot) -> Observation:
        now = self._clock()
        raw = classify(snapshot, self.baseline)

        grew = snapshot.text_size > self._max_size
        if grew:
            self._max_size = snapshot.text_size
            self._last_progress = now
        elif raw != self._last_signal and raw in (STREAMING, COMPLETED):
            # Streaming starting (or resuming) counts as progress.
            self._last_progress = now

        signal = raw
        if raw in FAILURE_SIGNALS:
            self._failure_streak += 1
            # The stop control can vanish one tick before the copy control
            # renders; only a repeated reading is a failure.
            if self._failure_streak < self.failure_confirm_polls:
                signal = self._last_signal if self._last_signal not in FAILURE_SIGNALS else NOT_READY
        else:
            self._failure_streak = 0

        idle_for = now - self._last_progress
        if signal in (STREAMING, CONTINUE_AVAILABLE, NOT_READY) and idle_for >= self.stall_timeout:
            signal = STALLED

        self._last_signal = raw if signal == STALLED else signal
        return Observation(signal=signal, raw_signal=raw, snapshot=snapshot, grew=grew, idle_for=idle_for)


__all__ = [
    "COMPLETED",
    "CONTINUE_AVAILABLE",
    "DomSnapshot",
    "ExtractionProtocol",
    "FAILED_NO_OUTPUT",
    "FAILED_WITH_TEXT",
    "FAILURE_SIGNALS",
    "NEEDS_CHALLENGE",
    "NEEDS_LOGIN",
    "NOT_READY",
    "Observation",
    "SIGNALS",
    "STALLED",
    "STREAMING",
    "classify",
]
