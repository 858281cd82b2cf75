"""Bounded polling loop that waits for a reply to finish."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ..errors import SESSION, OracleError, is_detached_context_error
from ..http_client import HttpClientError
from . import extraction
from .extraction import DomSnapshot, ExtractionProtocol
from .models import REASON_CHALLENGE, REASON_LOGIN

logger = logging.getLogger("chat_oracle.watcher")

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_STALLED = "stalled"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_CANCELED = "canceled"
OUTCOME_NEEDS_USER = "needs_user"

HEARTBEAT_SECONDS = 30.0


class SnapshotSource(Protocol):
    def snapshot(self) -> DomSnapshot: ...

    def click_continue(self) -> bool: ...

    def click_answer_now(self) -> bool: ...


@dataclass(slots=True)
class CompletionOutcome:
    status: str
    snapshot: DomSnapshot
    signal: str
    message: str = ""
    needs_user_reason: str | None = None


def watch_completion(
    page: SnapshotSource,
    protocol: ExtractionProtocol,
    *,
    poll_interval: float,
    deadline: float,
    is_canceled: Callable[[], bool],
    on_progress: Callable[[DomSnapshot], None] | None = None,
    max_poll_errors: int = 3,
    heartbeat: float = HEARTBEAT_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> CompletionOutcome:
    """Poll ``page`` until the reply reaches an outcome.

    ``deadline`` is an absolute ``clock()`` value for the whole run.
    Cancellation is checked before every poll. ``on_progress`` is called when
    text grows and at least every ``heartbeat`` seconds otherwise. Transient
    transport errors are retried up to ``max_poll_errors`` consecutive times;
    detached-context errors are raised at once so the caller can rebuild the
    page. A "Continue generating" control on a truncated reply and an
    "Answer now" control during long reasoning are clicked as they appear.
    """
    last = DomSnapshot(ready=False)
    poll_errors = 0
    last_beat = clock()
    while True:
        if is_canceled():
            return CompletionOutcome(OUTCOME_CANCELED, last, protocol.last_signal, "Canceled by user")
        if clock() >= deadline:
            return CompletionOutcome(OUTCOME_TIMEOUT, last, protocol.last_signal, "Run timed out")

        try:
            snapshot = page.snapshot()
        except (HttpClientError, OracleError) as exc:
            if isinstance(exc, OracleError) and exc.kind != SESSION:
                raise
            if is_detached_context_error(exc):
                raise
            poll_errors += 1
            logger.info("[watch] poll error %d/%d: %s", poll_errors, max_poll_errors, exc)
            if poll_errors >= max_poll_errors:
                raise
            sleep(poll_interval)
            continue
        poll_errors = 0
        last = snapshot

        observation = protocol.observe(snapshot)
        signal = observation.signal
        now = clock()
        if on_progress is not None and (observation.grew or now - last_beat >= heartbeat):
            on_progress(snapshot)
            last_beat = now

        if signal == extraction.COMPLETED:
            return CompletionOutcome(OUTCOME_COMPLETED, snapshot, signal)
        if signal == extraction.NEEDS_LOGIN:
            return CompletionOutcome(
                OUTCOME_NEEDS_USER, snapshot, signal, "Login required", needs_user_reason=REASON_LOGIN
            )
        if signal == extraction.NEEDS_CHALLENGE:
            return CompletionOutcome(
                OUTCOME_NEEDS_USER,
                snapshot,
                signal,
                "Automated-access challenge shown",
                needs_user_reason=REASON_CHALLENGE,
            )
        if signal == extraction.FAILED_NO_OUTPUT:
            return CompletionOutcome(OUTCOME_FAILED, snapshot, signal, "Generation stopped without output")
        if signal == extraction.FAILED_WITH_TEXT:
            return CompletionOutcome(
                OUTCOME_FAILED, snapshot, signal, "Generation stopped before the reply was finalized"
            )
        if signal == extraction.STALLED:
            if observation.raw_signal == extraction.STREAMING:
                message = f"Generation stalled: no new output for {observation.idle_for:.0f}s"
            else:
                message = f"Stalled: no reply appeared within {observation.idle_for:.0f}s"
            return CompletionOutcome(OUTCOME_STALLED, snapshot, signal, message)

        if signal == extraction.CONTINUE_AVAILABLE:
            _click(page.click_continue, "continue generating")
        elif snapshot.answer_now_visible:
            _click(page.click_answer_now, "answer now")
        sleep(poll_interval)


def _click(action: Callable[[], bool], label: str) -> None:
    # A missed click is retried on the next poll.
    try:
        clicked = action()
    except HttpClientError as exc:
        logger.info("[watch] %s click failed: %s", label, exc)
        return
    if not clicked:
        logger.info("[watch] %s control gone before click", label)


__all__ = [
    "CompletionOutcome",
    "OUTCOME_CANCELED",
    "OUTCOME_COMPLETED",
    "OUTCOME_FAILED",
    "OUTCOME_NEEDS_USER",
    "OUTCOME_STALLED",
    "OUTCOME_TIMEOUT",
    "SnapshotSource",
    "watch_completion",
]
