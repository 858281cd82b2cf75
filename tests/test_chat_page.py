from __future__ import annotations

import json
from typing import Any

import pytest

from chat_oracle.browser_session import BrowserSession
from chat_oracle.chat_page import ChatPage, conversation_id, normalize_prompt


class DummyConn:
    timeout = 5.0

    def __init__(self, value: Any) -> None:
        self.value = value
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.closed = False

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        if method == "Runtime.evaluate":
            return {"result": {"type": "object", "value": self.value}}
        return {}

    def close(self) -> None:
        self.closed = True


class SequenceConn(DummyConn):
    """Evaluates to each value in turn; the last one repeats."""

    def __init__(self, values: list[Any]) -> None:
        super().__init__(values[-1])
        self.values = list(values)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if method == "Runtime.evaluate" and self.values:
            self.value = self.values.pop(0)
        return super().send(method, params)


def test_conversation_id() -> None:
    assert conversation_id("https://chatgpt.com/c/6789-abcd") == "6789-abcd"
    assert conversation_id("https://chatgpt.com/") is None
    assert conversation_id("") is None


def test_snapshot_parses_page_state() -> None:
    conn = DummyConn(
        {
            "url": "https://chatgpt.com/c/abc",
            "ready": True,
            "composer_present": True,
            "stop_visible": True,
            "assistant_count": "2",
            "response_text": "Partial",
            "reasoning_text": None,
        }
    )
    page = ChatPage(BrowserSession(conn, tab_id="t1"))
    snap = page.snapshot()

    assert snap.url == "https://chatgpt.com/c/abc"
    assert snap.stop_visible is True
    assert snap.copy_visible is False
    assert snap.assistant_count == 2
    assert snap.response_text == "Partial"
    assert snap.reasoning_text == ""


def test_snapshot_of_unreadable_page_is_not_ready() -> None:
    page = ChatPage(BrowserSession(DummyConn(None), tab_id="t1"))
    assert page.snapshot().ready is False


def test_prompt_turn_lookup_matches_the_normalized_last_user_turn() -> None:
    conn = DummyConn(2)
    page = ChatPage(BrowserSession(conn, tab_id="t1"))

    assert page.prompt_turn_baseline('say  "hi"\r\n\tnow\u00a0please ') == 2
    expression = [p for (m, p) in conn.calls if m == "Runtime.evaluate"][-1]["expression"]
    assert json.dumps('say "hi" now please') in expression
    assert "__NEEDLE__" not in expression
    # Only the newest user turn is compared, and never the page's other text.
    assert "users[users.length - 1]" in expression
    assert ".includes(" not in expression
    assert "querySelector('main')" not in expression


@pytest.mark.parametrize("value", [None, True, False, -1, "1"])
def test_prompt_turn_lookup_rejects_anything_but_a_count(value: Any) -> None:
    page = ChatPage(BrowserSession(DummyConn(value), tab_id="t1"))
    assert page.prompt_turn_baseline("continue") is None


def test_blank_prompt_has_no_turn() -> None:
    conn = DummyConn(0)
    page = ChatPage(BrowserSession(conn, tab_id="t1"))
    assert page.prompt_turn_baseline("   ") is None
    assert conn.calls == []


def test_prompt_turn_wait_ignores_an_older_identical_turn() -> None:
    page = ChatPage(BrowserSession(DummyConn(1), tab_id="t1"))
    assert page.wait_for_prompt_turn("continue", 0.0, min_turns=2) is None
    assert page.wait_for_prompt_turn("continue", 0.0, min_turns=1) == 1


def test_normalize_prompt() -> None:
    assert normalize_prompt(" a\r\nb\t c\u00a0d  ") == "a b c d"
    assert normalize_prompt("") == ""


def test_continue_click_targets_the_labelled_button() -> None:
    conn = DummyConn(True)
    page = ChatPage(BrowserSession(conn, tab_id="t1"))

    assert page.click_continue() is True
    expression = [p for (m, p) in conn.calls if m == "Runtime.evaluate"][-1]["expression"]
    assert json.dumps("^continue generating$") in expression
    assert ChatPage(BrowserSession(DummyConn(False), tab_id="t1")).click_answer_now() is False


def test_ready_waits_for_conversation_history() -> None:
    base = {"url": "https://chatgpt.com/c/abc", "ready": True, "composer_present": True}
    conn = SequenceConn([{**base, "assistant_count": 0}, {**base, "assistant_count": 2}])
    page = ChatPage(BrowserSession(conn, tab_id="t1"), poll=0.0)

    snap = page.wait_until_ready(5.0, lambda: False)

    assert snap.assistant_count == 2
    assert conn.values == []



def test_close_only_drops_connection() -> None:
    conn = DummyConn(None)
    page = ChatPage(BrowserSession(conn, tab_id="t1"))
    page.close()
    assert conn.closed is True
    assert page.tab_id == "t1"
