"""
Driver for the remote chat web UI.

Everything the worker needs from the page goes through ``ChatPage``: load the
chat, wait for the composer, submit a prompt, and take DOM snapshots for the
extraction protocol. Selectors live in the JS snippets below; when the UI
changes, this is the file to update.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import re
import time
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Protocol

from .browser_session import BrowserSession
from .errors import INPUT, SESSION, OracleError
from .http_client import HttpClientError
from .runs.extraction import DomSnapshot

logger = logging.getLogger("chat_oracle.page")

MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024
DEBUG_THUMBNAIL_SIZE = (640, 640)

_CONVERSATION_RE = re.compile(r"/c/([A-Za-z0-9-]+)")

COMPOSER_SELECTOR = (
    'textarea#prompt-textarea, div[contenteditable="true"]#prompt-textarea, '
    'div[contenteditable="true"][data-testid="prompt-textarea"], '
    'div[contenteditable="true"][role="textbox"], textarea[data-id="root"], textarea'
)

# One round-trip per poll. Returns the fields of DomSnapshot.
SNAPSHOT_JS = r"""
(() => {
  const visible = (el) => {
    if (!el) return false;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
    const rect = el.getBoundingClientRect();
    return rect.width > 0 || rect.height > 0;
  };
  const bodyText = (document.body && document.body.innerText) || '';
  const url = window.location.href;

  const challenge =
    /just a moment|checking your browser|verify you are human/i.test(document.title + '\n' + bodyText.slice(0, 2000)) ||
    !!document.querySelector('iframe[src*="challenges.cloudflare.com"], #challenge-form, #cf-challenge-running');

  const loginUrl = /\/(auth|login)(\/|\?|$)|auth\.openai\.com/i.test(url);
  const emailInput = !!document.querySelector('input[type="email"], input[name="username"]');
  const loginButton = Array.from(document.querySelectorAll('button, a')).some(
    (el) => visible(el) && /^(log in|sign in)$/i.test((el.innerText || '').trim())
  );

  const composer = document.querySelector(__COMPOSER__);
  const composerPresent = !!composer && visible(composer);

  const stopButton = document.querySelector('[data-testid="stop-button"]');
  let stopVisible = !!stopButton && visible(stopButton);
  if (!stopVisible) {
    stopVisible = Array.from(document.querySelectorAll('button')).some((button) => {
      if (!visible(button)) return false;
      const label = button.getAttribute('aria-label') || '';
      const text = (button.innerText || '').trim();
      return /^stop( generating| streaming)?$/i.test(label) || /^stop generating$/i.test(text);
    });
  }

  const turns = Array.from(document.querySelectorAll('[data-message-author-role="assistant"]'));
  const last = turns.length ? turns[turns.length - 1] : null;
  const container = last
    ? (last.closest('article, [data-testid^="conversation-turn"]') || last.parentElement || last)
    : null;
  const copyVisible = !!container && Array.from(
    container.querySelectorAll('[data-testid="copy-turn-action-button"], button[aria-label="Copy"], button[aria-label*="Copy"]')
  ).some((el) => visible(el));

  const labelled = (pattern) => Array.from(document.querySelectorAll('button')).some(
    (button) => visible(button) && !button.disabled && pattern.test((button.innerText || button.getAttribute('aria-label') || '').trim())
  );

  const reasoningSelector = '[data-testid*="reasoning"], [data-testid*="thinking"], .reasoning';
  let reasoningText = '';
  if (container) {
    reasoningText = Array.from(container.querySelectorAll(reasoningSelector))
      .map((el) => (el.innerText || '').trim())
      .filter(Boolean)
      .join('\n\n');
  }

  const toMarkdown = (root) => {
    const clone = root.cloneNode(true);
    clone.querySelectorAll(reasoningSelector).forEach((el) => el.remove());
    clone.querySelectorAll('pre').forEach((pre) => {
      const code = (pre.innerText || '').replace(/\s+$/, '');
      pre.replaceWith('\n```\n' + code + '\n```\n');
    });
    clone.querySelectorAll('br').forEach((br) => br.replaceWith('\n'));
    clone.querySelectorAll('li').forEach((li) => li.replaceWith('- ' + (li.innerText || li.textContent || '') + '\n'));
    clone.querySelectorAll('p').forEach((p) => p.append('\n\n'));
    return (clone.textContent || '').replace(/\n{3,}/g, '\n\n').trim();
  };

  return {
    url,
    ready: document.readyState !== 'loading',
    composer_present: composerPresent,
    login_wall: !composerPresent && (loginUrl || emailInput || loginButton),
    challenge,
    stop_visible: stopVisible,
    copy_visible: copyVisible,
    continue_visible: labelled(/^continue generating$/i),
    answer_now_visible: labelled(/^answer now$/i),
    assistant_count: turns.length,
    response_text: last ? toMarkdown(last) : '',
    reasoning_text: reasoningText,
  };
})()
""".replace("__COMPOSER__", json.dumps(COMPOSER_SELECTOR))

FOCUS_COMPOSER_JS = r"""
(() => {
  const el = document.querySelector(__COMPOSER__);
  if (!el) return 'missing';
  if (el.disabled || el.getAttribute('aria-disabled') === 'true' || el.getAttribute('contenteditable') === 'false') {
    return 'disabled';
  }
  el.focus();
  if (el instanceof HTMLTextAreaElement) {
    el.value = '';
  } else {
    el.textContent = '';
  }
  el.dispatchEvent(new Event('input', { bubbles: true }));
  return 'ok';
})()
""".replace("__COMPOSER__", json.dumps(COMPOSER_SELECTOR))

COMPOSER_VALUE_JS = r"""
(() => {
  const el = document.querySelector(__COMPOSER__);
  if (!el) return '';
  return el instanceof HTMLTextAreaElement ? el.value : (el.innerText || '');
})()
""".replace("__COMPOSER__", json.dumps(COMPOSER_SELECTOR))

CLICK_SEND_JS = r"""
(() => {
  const selectors = ['button[data-testid="send-button"]', 'button[aria-label*="Send"]', 'button[aria-label*="send"]'];
  for (const selector of selectors) {
    const button = document.querySelector(selector);
    if (button && !button.disabled) {
      button.click();
      return true;
    }
  }
  return false;
})()
"""

CLICK_LABELLED_JS = r"""
((pattern) => {
  const button = Array.from(document.querySelectorAll('button')).find(
    (el) => !el.disabled && new RegExp(pattern, 'i').test((el.innerText || el.getAttribute('aria-label') || '').trim())
  );
  if (!button) return false;
  button.click();
  return true;
})(__PATTERN__)
"""

# Only the newest user turn counts; an older identical prompt is not ours.
# Returns the number of assistant turns above it, or null.
PROMPT_TURN_JS = r"""
((needle) => {
  const normalize = (value) => (value || '')
    .replace(/\r\n/g, '\n')
    .replace(/\u00a0/g, ' ')
    .replace(/\t/g, ' ')
    .replace(/\s+/g, ' ')
    .trim();
  const users = Array.from(document.querySelectorAll('[data-message-author-role="user"]'));
  if (!users.length) return null;
  const last = users[users.length - 1];
  if (normalize(last.innerText) !== needle) return null;
  const assistants = Array.from(document.querySelectorAll('[data-message-author-role="assistant"]'));
  return assistants.filter((node) => last.compareDocumentPosition(node) & Node.DOCUMENT_POSITION_PRECEDING).length;
})(__NEEDLE__)
"""

# Conversation pages render the composer before the earlier turns.
HISTORY_GRACE_SECONDS = 5.0


def normalize_prompt(text: str) -> str:
    """Collapse whitespace the way the page renders a user turn."""
    text = (text or "").replace("\r\n", "\n").replace("\u00a0", " ").replace("\t", " ")
    return re.sub(r"\s+", " ", text).strip()


def conversation_id(url: str) -> str | None:
    match = _CONVERSATION_RE.search(url or "")
    return match.group(1) if match else None


class ChatDriver(Protocol):
    """What the worker needs from a chat page."""

    def open(self, url: str) -> None: ...

    def snapshot(self) -> DomSnapshot: ...

    def wait_until_ready(self, timeout: float, is_canceled: Callable[[], bool]) -> DomSnapshot: ...

    def attach_files(self, paths: list[str]) -> None: ...

    def submit_prompt(self, prompt: str) -> None: ...

    def prompt_turn_baseline(self, prompt: str) -> int | None: ...

    def wait_for_prompt_turn(self, prompt: str, timeout: float, min_turns: int = 0) -> int | None: ...

    def click_continue(self) -> bool: ...

    def click_answer_now(self) -> bool: ...

    def current_url(self) -> str: ...

    def is_responsive(self) -> bool: ...

    def reload(self) -> None: ...

    def capture_debug(self, directory: Path) -> list[Path]: ...

    def close(self) -> None: ...


class ChatPage:
    def __init__(self, session: BrowserSession, *, op_timeout: float = 8.0, poll: float = 0.5) -> None:
        self.session = session
        self.op_timeout = op_timeout
        self.poll = poll

    @property
    def tab_id(self) -> str:
        return self.session.tab_id

    def _eval(self, expression: str, timeout: float | None = None):
        return self.session.eval_js(expression, timeout=timeout or self.op_timeout)

    def open(self, url: str) -> None:
        logger.info("[page] navigate %s", url)
        self.session.navigate(url, wait_load=True, timeout=max(15.0, self.op_timeout))

    def snapshot(self) -> DomSnapshot:
        return DomSnapshot.from_dict(self._eval(SNAPSHOT_JS))

    def wait_until_ready(self, timeout: float, is_canceled: Callable[[], bool]) -> DomSnapshot:
        """Wait for the composer, or for a wall that needs a human."""
        start = time.monotonic()
        deadline = start + timeout
        snap = self.snapshot()
        while True:
            if snap.login_wall or snap.challenge:
                return snap
            if snap.composer_present and not self._history_pending(snap, start):
                return snap
            if is_canceled() or time.monotonic() >= deadline:
                return snap
            time.sleep(self.poll)
            snap = self.snapshot()

    def _history_pending(self, snap: DomSnapshot, start: float) -> bool:
        if snap.assistant_count or not conversation_id(snap.url):
            return False
        return time.monotonic() - start < HISTORY_GRACE_SECONDS

    def attach_files(self, paths: list[str]) -> None:
        """Hand files to the page's file input via DOM.setFileInputFiles."""
        if not paths:
            return
        validated: list[str] = []
        for raw in paths:
            path = Path(raw).expanduser()
            if not path.is_file():
                raise OracleError(INPUT, f"Attachment not found: {raw}", "Pass paths to existing files")
            if path.stat().st_size > MAX_ATTACHMENT_BYTES:
                raise OracleError(INPUT, f"Attachment {path.name} is larger than 20MB")
            validated.append(str(path.resolve()))
        self.session.send("DOM.enable", {})
        doc = self.session.send("DOM.getDocument", {"depth": 0})
        root_id = doc["root"]["nodeId"]
        node = self.session.send("DOM.querySelector", {"nodeId": root_id, "selector": 'input[type="file"]'})
        node_id = node.get("nodeId", 0)
        if not node_id:
            raise OracleError(SESSION, "File input not found on the chat page", "The chat UI may have changed")
        self.session.send("DOM.setFileInputFiles", {"nodeId": node_id, "files": validated})
        logger.info("[prompt] attached %d file(s)", len(validated))

    def submit_prompt(self, prompt: str) -> None:
        state = self._eval(FOCUS_COMPOSER_JS)
        if state != "ok":
            raise OracleError(SESSION, f"Prompt input {state}", "Reload the chat page and resume")
        self.session.type_text(prompt)
        typed = self._eval(COMPOSER_VALUE_JS) or ""
        if typed.strip() != prompt.strip():
            logger.info("[prompt] composer holds %d chars, expected %d", len(typed), len(prompt))
        # The send button enables a moment after input settles.
        deadline = time.monotonic() + 3.0
        while not self._eval(CLICK_SEND_JS):
            if time.monotonic() >= deadline:
                self.session.press_key("Enter")
                break
            time.sleep(0.2)
        logger.info("[prompt] submitted (%d chars)", len(prompt))

    def prompt_turn_baseline(self, prompt: str) -> int | None:
        """Assistant turns above the newest user turn, if that turn is ``prompt``."""
        needle = normalize_prompt(prompt)
        if not needle:
            return None
        value = self._eval(PROMPT_TURN_JS.replace("__NEEDLE__", json.dumps(needle)))
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return value

    def wait_for_prompt_turn(self, prompt: str, timeout: float, min_turns: int = 0) -> int | None:
        """Poll until ``prompt`` is the newest user turn with at least ``min_turns`` replies above it."""
        deadline = time.monotonic() + timeout
        while True:
            found = self.prompt_turn_baseline(prompt)
            if found is not None and found >= min_turns:
                return found
            if time.monotonic() >= deadline:
                return None
            time.sleep(0.3)

    def click_continue(self) -> bool:
        return self._click_labelled("^continue generating$")

    def click_answer_now(self) -> bool:
        return self._click_labelled("^answer now$")

    def _click_labelled(self, pattern: str) -> bool:
        clicked = bool(self._eval(CLICK_LABELLED_JS.replace("__PATTERN__", json.dumps(pattern))))
        if clicked:
            logger.info("[watch] clicked %s", pattern.strip("^$"))
        return clicked

    def current_url(self) -> str:
        return self.session.get_url()

    def is_responsive(self) -> bool:
        try:
            return self.session.eval_js("1 + 1", timeout=min(3.0, self.op_timeout)) == 2
        except HttpClientError:
            return False

    def reload(self) -> None:
        with suppress(HttpClientError):
            self._eval("window.stop()")
        self.session.reload(timeout=max(15.0, self.op_timeout))

    def capture_debug(self, directory: Path) -> list[Path]:
        """Save page HTML, visible text and a screenshot (plus a thumbnail)."""
        directory.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        html = self.session.get_dom()
        if html:
            target = directory / "page.html"
            target.write_text(html, encoding="utf-8")
            written.append(target)
        with suppress(HttpClientError):
            text = self._eval("document.body ? document.body.innerText : ''") or ""
            target = directory / "page.txt"
            target.write_text(text, encoding="utf-8")
            written.append(target)
        try:
            data_b64 = self.session.screenshot()
        except HttpClientError as exc:
            logger.info("[debug] screenshot failed: %s", exc)
            return written
        try:
            png = base64.b64decode(data_b64)
        except (binascii.Error, ValueError):
            return written
        if not png:
            return written
        target = directory / "screenshot.png"
        target.write_bytes(png)
        written.append(target)
        thumb = _write_thumbnail(png, directory / "screenshot-thumb.png")
        if thumb is not None:
            written.append(thumb)
        return written

    def close(self) -> None:
        self.session.close()


def _write_thumbnail(png: bytes, target: Path) -> Path | None:
    from PIL import Image

    try:
        with Image.open(io.BytesIO(png)) as img:
            img.thumbnail(DEBUG_THUMBNAIL_SIZE)
            img.save(target, format="PNG")
    except OSError as exc:
        logger.info("[debug] thumbnail failed: %s", exc)
        return None
    return target


__all__ = ["COMPOSER_SELECTOR", "ChatDriver", "ChatPage", "SNAPSHOT_JS", "conversation_id", "normalize_prompt"]
