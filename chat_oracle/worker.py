"""
Background worker: drives one run from submission to a final state.

One worker process owns one run and is the only writer of its status while
alive. It attaches to (or launches) the shared browser, opens the run's tab,
submits the prompt once, then polls the page until the reply completes,
fails, stalls, needs a human, or the caller cancels.

Transport failures are retried up to ``max_attempts``; between attempts the
worker tries to recover the page (reload, fresh tab) and, when the browser
itself is wedged, goes through the restart approval protocol before killing
it.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Protocol

from .chat_page import ChatDriver, ChatPage, conversation_id
from .config import OracleConfig
from .errors import (
    BROWSER_FAILURE,
    INTERNAL,
    SESSION,
    TERMINAL_CONFLICT,
    TIMEOUT,
    CanceledError,
    NeedsUserError,
    OracleError,
    is_detached_context_error,
    session_error,
    with_retry,
)
from .http_client import HttpClientError
from .launcher import BrowserLauncher
from .restart.approval import ACTION_CANCELED, ACTION_DONE, ACTION_TIMEOUT, RestartCoordinator
from .restart.notify import notify_with_notificli
from .runs import paths
from .runs.extraction import DomSnapshot, ExtractionProtocol
from .runs.models import (
    REASON_CHALLENGE,
    REASON_KILL_BROWSER,
    REASON_LOGIN,
    REASON_RESTART_APPROVAL,
    RunOptions,
    RunRecord,
)
from .runs.state_machine import RunStateMachine
from .runs.store import FileRunStore, RunStore
from .runs.watcher import (
    OUTCOME_CANCELED,
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_NEEDS_USER,
    OUTCOME_STALLED,
    CompletionOutcome,
    watch_completion,
)
from .session_manager import SessionManager

logger = logging.getLogger("chat_oracle.worker")

READY_TIMEOUT = 45.0
USER_MESSAGE_TIMEOUT = 10.0
# A resumed page may take a while to render the earlier submission.
RESUME_MESSAGE_TIMEOUT = 20.0

SUGGEST_LOGIN = "Log in to the chat service in the automation browser, then resume the run"
SUGGEST_CHALLENGE = "Solve the verification challenge in the automation browser, then resume the run"
SUGGEST_KILL = "Approve the browser restart (approve_restart) or resume with allow_kill=True"


class BrowserProvider(Protocol):
    def ensure_browser(self) -> None: ...

    def open_page(self, target_id: str | None) -> ChatDriver: ...

    def healthy(self) -> bool: ...

    def restart_browser(self) -> bool: ...

    def close_tab(self, target_id: str) -> None: ...


class CdpBrowserProvider:
    """Shared automation browser reached over the DevTools protocol."""

    def __init__(self, config: OracleConfig) -> None:
        self.config = config
        self.launcher = BrowserLauncher(config)
        self.sessions = SessionManager(config)

    def ensure_browser(self) -> None:
        result = self.launcher.ensure_running()
        if result.started:
            logger.info("[worker] %s", result.message)
        if not self.launcher.cdp_ready(timeout=1.0):
            raise OracleError(
                SESSION,
                f"Browser not reachable on port {self.config.cdp_port}: {result.message}",
                "Check ORACLE_BROWSER_BINARY and that the debugging port is free",
                {"log_tail": result.log_tail or ""},
            )

    def open_page(self, target_id: str | None) -> ChatPage:
        attach = with_retry(max_attempts=self.config.session_retries, delay=0.5)(self._attach)
        return attach(target_id)

    def _attach(self, target_id: str | None) -> ChatPage:
        session = self.sessions.get_session(target_id, timeout=self.config.op_timeout)
        return ChatPage(session, op_timeout=self.config.op_timeout)

    def healthy(self) -> bool:
        return self.launcher.cdp_ready(timeout=1.0)

    def restart_browser(self) -> bool:
        result = self.launcher.restart()
        logger.info("[recovery] %s", result.message)
        return self.launcher.cdp_ready(timeout=1.0)

    def close_tab(self, target_id: str) -> None:
        self.sessions.close_tab(target_id)


class Worker:
    def __init__(
        self,
        run_id: str,
        store: RunStore,
        config: OracleConfig,
        *,
        provider: BrowserProvider | None = None,
        coordinator: RestartCoordinator | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.config = config
        self.machine = RunStateMachine(store)
        self.provider = provider or CdpBrowserProvider(config)
        self.coordinator = coordinator or RestartCoordinator(
            config.approvals_dir,
            notifier=partial(notify_with_notificli, command=config.notificli_path),
            poll_interval=config.approval_poll,
            timeout=config.approval_timeout,
        )
        self._clock = clock
        self._sleep = sleep
        self.page: ChatDriver | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Entry
    # ─────────────────────────────────────────────────────────────────────────

    def is_canceled(self) -> bool:
        return self.store.cancel_requested(self.run_id)

    def _check_cancel(self) -> None:
        if self.is_canceled():
            raise CanceledError("Canceled by user")

    def run(self) -> RunRecord:
        record = self.machine.get(self.run_id)
        if record.terminal:
            logger.info("[worker] run %s already %s; nothing to do", self.run_id, record.state)
            return record
        logger.info("[worker] run %s start state=%s attempt=%d", self.run_id, record.state, record.attempt)

        try:
            options = self.store.load_options(self.run_id)
            self.machine.update(self.run_id, worker_pid=os.getpid(), stage="init", message="Worker started")
            deadline = self._clock() + options.run_timeout
            self._check_cancel()
            return self._attempt_loop(options, deadline)
        except CanceledError:
            return self._finish(self.machine.cancel, "canceled")
        except NeedsUserError as exc:
            logger.info("[worker] needs user: %s (%s)", exc.message, exc.reason)
            return self._finish(
                partial(self.machine.mark_needs_user, reason=exc.reason, message=exc.message, suggestion=exc.suggestion),
                "needs_user",
                worker_pid=None,
            )
        except OracleError as exc:
            logger.info("[worker] failed: %s", exc)
            return self._fail(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[worker] unexpected failure")
            return self._fail(OracleError(INTERNAL, f"Unexpected worker error: {exc}", "Inspect run.log and resume"))
        finally:
            self._close_page()

    def _finish(self, action: Callable[..., RunRecord], label: str, **changes: object) -> RunRecord:
        try:
            return action(self.run_id, **changes)
        except OracleError as exc:
            if exc.kind != TERMINAL_CONFLICT:
                raise
            # A caller already finalized the run; its write wins.
            logger.info("[worker] skip %s: %s", label, exc.message)
            return self.machine.get(self.run_id)

    def _fail(self, error: OracleError, snapshot: DomSnapshot | None = None) -> RunRecord:
        self._capture_debug()
        changes: dict[str, object] = {}
        if snapshot is not None and snapshot.response_text:
            changes["response_text"] = snapshot.response_text
            changes["reasoning_text"] = snapshot.reasoning_text
        return self._finish(partial(self.machine.fail, error=error), "fail", **changes)

    # ─────────────────────────────────────────────────────────────────────────
    # Attempts and recovery
    # ─────────────────────────────────────────────────────────────────────────

    def _attempt_loop(self, options: RunOptions, deadline: float) -> RunRecord:
        attempts = 0
        while True:
            attempts += 1
            record = self.machine.update(self.run_id, attempt=self.machine.get(self.run_id).attempt + 1)
            try:
                return self._attempt(record, options, deadline)
            except HttpClientError as exc:
                error = session_error(exc, "browser operation")
                cause: Exception = exc
            except OracleError as exc:
                if exc.kind != SESSION:
                    raise
                error, cause = exc, exc
            logger.info("[worker] attempt %d/%d failed: %s", attempts, options.max_attempts, error.message)
            if attempts >= options.max_attempts:
                raise error
            if self._clock() >= deadline:
                raise OracleError(TIMEOUT, "Run timed out during recovery", "Start a new run")
            self._recover(cause, options)

    def _open_page(self, options: RunOptions) -> ChatDriver:
        if self.page is not None:
            return self.page
        self.machine.update(self.run_id, stage="launch", message="Connecting to browser")
        self.provider.ensure_browser()
        page = self.provider.open_page(options.target_id)
        self.page = page
        tab_id = getattr(page, "tab_id", None)
        if tab_id and tab_id != options.target_id:
            options.target_id = tab_id
            self.store.save_options(self.run_id, options)
        return page

    def _attempt(self, record: RunRecord, options: RunOptions, deadline: float) -> RunRecord:
        self._check_cancel()
        page = self._open_page(options)

        target_url = record.conversation_ref or options.base_url
        current = ""
        try:
            current = page.current_url()
        except HttpClientError:
            current = ""
        if not (record.conversation_ref and conversation_id(current) == conversation_id(record.conversation_ref)):
            self.machine.update(self.run_id, stage="navigate", message="Opening chat")
            page.open(target_url)

        self.machine.update(self.run_id, stage="login", message="Waiting for chat to become ready")
        snap = page.wait_until_ready(READY_TIMEOUT, self.is_canceled)
        self._check_cancel()
        if snap.challenge:
            raise NeedsUserError(REASON_CHALLENGE, "Automated-access challenge shown", SUGGEST_CHALLENGE)
        if snap.login_wall:
            raise NeedsUserError(REASON_LOGIN, "Login required", SUGGEST_LOGIN)
        if not snap.composer_present:
            raise OracleError(SESSION, "Prompt input not available", "Reload the chat page and resume")

        record = self.machine.mark_running(self.run_id, stage="submit", message="Chat ready")
        baseline = self._submit_once(record, options, page, snap)

        outcome = self._watch(page, options, baseline, deadline)
        if outcome.status == OUTCOME_FAILED and not options.resubmitted:
            baseline = self._resubmit(record, options, page, outcome)
            outcome = self._watch(page, options, baseline, deadline)
        return self._conclude(outcome, page)

    def _watch(self, page: ChatDriver, options: RunOptions, baseline: int, deadline: float) -> CompletionOutcome:
        self.machine.update(self.run_id, stage="waiting", message="Waiting for response")
        protocol = ExtractionProtocol(baseline, stall_timeout=options.stall_timeout, clock=self._clock)
        return watch_completion(
            page,
            protocol,
            poll_interval=options.poll_interval,
            deadline=deadline,
            is_canceled=self.is_canceled,
            on_progress=self._on_progress,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _submit_once(self, record: RunRecord, options: RunOptions, page: ChatDriver, snap: DomSnapshot) -> int:
        """Send the prompt at most once; return the number of assistant turns above it.

        After the prompt went out, later attempts only wait for its user turn
        to render. They type it again only when no conversation exists yet
        and the turn never shows up.
        """
        prompt = record.prompt
        if options.prompt_submitted:
            floor = options.baseline_assistant_count or 0
            found = page.wait_for_prompt_turn(prompt, RESUME_MESSAGE_TIMEOUT, min_turns=floor)
            if found is not None:
                logger.info("[prompt] already submitted; resuming wait after %d turn(s)", found)
                self._save_baseline(options, found)
                return found
            if record.conversation_ref or conversation_id(snap.url) or conversation_id(page.current_url()):
                logger.info("[prompt] already submitted; turn not rendered, baseline stays %d", floor)
                return floor
            logger.info("[prompt] earlier submission never reached a conversation; sending again")

        # Follow-up pages can show the composer before the earlier turns.
        provisional = snap.assistant_count
        options.prompt_submitted = True
        self._save_baseline(options, provisional)
        if options.attachments:
            page.attach_files(options.attachments)
        self._send(page, prompt, options, provisional)
        self._remember_conversation(page.current_url())
        return self._locate_prompt_turn(page, prompt, options, provisional)

    def _send(self, page: ChatDriver, prompt: str, options: RunOptions, floor: int) -> None:
        try:
            page.submit_prompt(prompt)
        except (HttpClientError, OracleError):
            if not self._prompt_visible(page, prompt, floor):
                options.prompt_submitted = False
                self.store.save_options(self.run_id, options)
            raise

    def _prompt_visible(self, page: ChatDriver, prompt: str, floor: int) -> bool:
        try:
            found = page.prompt_turn_baseline(prompt)
        except HttpClientError:
            # Unknown counts as sent.
            return True
        return found is not None and found >= floor

    def _locate_prompt_turn(self, page: ChatDriver, prompt: str, options: RunOptions, floor: int) -> int:
        found = page.wait_for_prompt_turn(prompt, USER_MESSAGE_TIMEOUT, min_turns=floor)
        if found is None:
            logger.info("[prompt] user message not visible yet; baseline stays %d", floor)
            return floor
        if found != floor:
            logger.info("[prompt] %d assistant turn(s) above the prompt", found)
            self._save_baseline(options, found)
        return found

    def _resubmit(self, record: RunRecord, options: RunOptions, page: ChatDriver, outcome: CompletionOutcome) -> int:
        """Send the prompt a second time after a failed reply; return the new baseline."""
        logger.info("[prompt] reply failed (%s); sending the prompt once more", outcome.signal)
        self.machine.update(self.run_id, stage="submit", message="Reply failed; sending the prompt again")
        floor = max(options.baseline_assistant_count or 0, outcome.snapshot.assistant_count)
        options.resubmitted = True
        self._save_baseline(options, floor)
        page.submit_prompt(record.prompt)
        return self._locate_prompt_turn(page, record.prompt, options, floor)

    def _save_baseline(self, options: RunOptions, baseline: int) -> None:
        options.baseline_assistant_count = baseline
        self.store.save_options(self.run_id, options)

    def _remember_conversation(self, url: str) -> None:
        if conversation_id(url):
            record = self.machine.get(self.run_id)
            if record.conversation_ref != url:
                self.machine.update(self.run_id, conversation_ref=url)

    def _on_progress(self, snapshot: DomSnapshot) -> None:
        changes: dict[str, object] = {
            "response_text": snapshot.response_text,
            "reasoning_text": snapshot.reasoning_text,
        }
        if conversation_id(snapshot.url):
            changes["conversation_ref"] = snapshot.url
        self.machine.update(self.run_id, **changes)

    def _conclude(self, outcome: CompletionOutcome, page: ChatDriver) -> RunRecord:
        snap = outcome.snapshot
        if outcome.status == OUTCOME_COMPLETED:
            if self.is_canceled():
                raise CanceledError("Canceled by user")
            ref = snap.url if conversation_id(snap.url) else None
            self.store.write_result(self.run_id, snap.response_text)
            record = self._finish(
                partial(
                    self.machine.complete,
                    response_text=snap.response_text,
                    reasoning_text=snap.reasoning_text,
                    conversation_ref=ref,
                ),
                "complete",
            )
            self._close_tab()
            logger.info("[worker] completed (%d chars)", len(snap.response_text))
            return record
        if outcome.status == OUTCOME_CANCELED:
            raise CanceledError(outcome.message)
        if outcome.status == OUTCOME_NEEDS_USER:
            reason = outcome.needs_user_reason or REASON_LOGIN
            suggestion = SUGGEST_CHALLENGE if reason == REASON_CHALLENGE else SUGGEST_LOGIN
            raise NeedsUserError(reason, outcome.message, suggestion)
        if outcome.status == OUTCOME_FAILED:
            error = OracleError(
                BROWSER_FAILURE,
                outcome.message,
                "Open the conversation in the browser to check the reply, or start a follow-up run",
                {"signal": outcome.signal},
            )
        elif outcome.status == OUTCOME_STALLED:
            error = OracleError(TIMEOUT, outcome.message, "Increase ORACLE_STALL_MS or start a follow-up run")
        else:
            error = OracleError(TIMEOUT, outcome.message, "Increase ORACLE_TIMEOUT_MS or start a follow-up run")
        record = self._fail(error, snap)
        self._close_tab()
        return record

    def _recover(self, cause: Exception, options: RunOptions) -> None:
        """Get back to a usable page before the next attempt."""
        self.machine.update(self.run_id, stage="recovery", message="Recovering browser session")
        if is_detached_context_error(cause):
            logger.info("[recovery] detached page context; opening a fresh page")
            self._close_page()
            return

        page = self.page
        browser_ok = self.provider.healthy()
        if page is None:
            # Never attached: the next attempt relaunches, unless the caller
            # already consented to killing a wedged browser.
            if not browser_ok and options.allow_kill:
                self._restart_browser(options)
            return
        if browser_ok:
            if page.is_responsive():
                logger.info("[recovery] page responsive; retrying")
                return
            try:
                page.reload()
                logger.info("[recovery] reload ok")
            except (HttpClientError, OracleError) as exc:
                logger.info("[recovery] reload failed: %s", exc)
            if page.is_responsive():
                return

        logger.info("[recovery] browser unresponsive (cdp=%s)", browser_ok)
        self._close_page()
        self._restart_browser(options)

    def _restart_browser(self, options: RunOptions) -> None:
        self.machine.update(
            self.run_id,
            stage="recovery",
            message="Browser unresponsive; waiting for restart approval",
            needs_user_reason=REASON_RESTART_APPROVAL,
        )
        result = self.coordinator.wait_for_approval(
            self.run_id,
            title="Approve browser restart",
            message=f"Oracle run {self.run_id} needs to restart the automation browser to continue.",
            pre_approved=options.allow_kill,
            is_canceled=self.is_canceled,
            on_status=lambda text: self.machine.update(self.run_id, message=text),
        )
        if result.action == ACTION_CANCELED:
            raise CanceledError("Canceled by user")
        if result.action == ACTION_TIMEOUT:
            raise NeedsUserError(REASON_KILL_BROWSER, "Browser unresponsive; restart was not approved", SUGGEST_KILL)
        if result.action == ACTION_DONE:
            logger.info("[recovery] browser restart already completed by another run")
            self.machine.update(self.run_id, needs_user_reason=None, message="Browser restarted by another run")
            return

        self.machine.update(self.run_id, message="Restarting browser")
        restarted = False
        try:
            restarted = self.provider.restart_browser()
        finally:
            if restarted:
                self.coordinator.mark_restart_done(result.approved_at)
            else:
                self.coordinator.abandon()
        if not restarted:
            raise OracleError(BROWSER_FAILURE, "Browser restart failed", "Close the automation browser and resume")
        self.machine.update(self.run_id, needs_user_reason=None, message="Browser restarted")

    # ─────────────────────────────────────────────────────────────────────────
    # Cleanup
    # ─────────────────────────────────────────────────────────────────────────

    def _capture_debug(self) -> None:
        run_path = getattr(self.store, "run_path", None)
        if not self.config.capture_debug or self.page is None or run_path is None:
            return
        try:
            written = self.page.capture_debug(paths.debug_dir(run_path(self.run_id)))
        except (HttpClientError, OracleError, OSError) as exc:
            logger.info("[debug] capture failed: %s", exc)
            return
        logger.info("[debug] captured %d artifact(s)", len(written))

    def _close_tab(self) -> None:
        page = self.page
        tab_id = getattr(page, "tab_id", None) if page is not None else None
        self._close_page()
        if tab_id:
            try:
                self.provider.close_tab(tab_id)
            except (HttpClientError, OSError) as exc:
                logger.info("[worker] close tab failed: %s", exc)

    def _close_page(self) -> None:
        page, self.page = self.page, None
        if page is None:
            return
        try:
            page.close()
        except (HttpClientError, OSError) as exc:
            logger.info("[worker] close page failed: %s", exc)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Drive one chat-oracle run to completion")
    parser.add_argument("--run-dir", required=True, help="Run directory (<runs root>/<run id>)")
    args = parser.parse_args(argv)

    run_path = Path(args.run_dir).expanduser().resolve()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        filename=str(paths.log_path(run_path)),
    )

    config = OracleConfig.from_env()
    store = FileRunStore(run_path.parent)
    try:
        options = store.load_options(run_path.name)
        if options.debug_port:
            config.cdp_port = options.debug_port
        record = Worker(run_path.name, store, config).run()
    except OracleError as exc:
        logger.error("[worker] %s", exc)
        return 1
    logger.info("[worker] exit state=%s", record.state)
    return 0


if __name__ == "__main__":
    sys.exit(main())
