"""BrowserSession: the handful of page operations the chat driver uses."""

from __future__ import annotations

import json
from contextlib import suppress
from typing import Any, Protocol

from .http_client import HttpClientError

VIRTUAL_KEY_CODES = {"Enter": 13, "Tab": 9, "Escape": 27, "Backspace": 8}


class Connection(Protocol):
    timeout: float

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


def _unwrap_remote_object(value: Any) -> Any:
    """Plain Python value of a by-value RemoteObject; undefined and null are None."""
    if not isinstance(value, dict):
        return value
    if value.get("type") == "undefined":
        return None
    if value.get("type") == "object" and value.get("subtype") == "null":
        return None
    return value.get("value", value)


class BrowserSession:
    """A page target behind one CDP connection.

    Domains are enabled lazily, once per connection. Closing the session
    drops the connection; the tab itself stays open.
    """

    def __init__(self, connection: Connection, tab_id: str, tab_url: str = ""):
        self.conn = connection
        self.tab_id = tab_id
        self.tab_url = tab_url
        self._enabled: set[str] = set()

    def __enter__(self) -> BrowserSession:
        self._enable("Page")
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def _enable(self, domain: str) -> None:
        if domain not in self._enabled:
            self.conn.send(f"{domain}.enable", {})
            self._enabled.add(domain)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.conn.send(method, params)

    def navigate(self, url: str, wait_load: bool = True, timeout: float = 15.0) -> str:
        self._enable("Page")
        reply = self.conn.send("Page.navigate", {"url": url})
        if reply.get("errorText"):
            raise HttpClientError(f"Navigation to {url} failed: {reply['errorText']}")
        if wait_load:
            self.wait_load(timeout)
        self.tab_url = url
        return url

    def wait_load(self, timeout: float = 15.0) -> bool:
        return self.conn.wait_for_event("Page.loadEventFired", timeout) is not None

    def reload(self, ignore_cache: bool = False, timeout: float = 15.0) -> None:
        self._enable("Page")
        self.conn.send("Page.reload", {"ignoreCache": ignore_cache})
        self.wait_load(timeout)

    def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate ``expression`` in the page, awaiting promises.

        ``timeout`` replaces the connection's command timeout for this call
        only. A page-side exception is raised as HttpClientError.
        """
        self._enable("Runtime")
        params = {"expression": expression, "returnByValue": True, "awaitPromise": True}
        saved = self.conn.timeout
        if timeout is not None:
            self.conn.timeout = float(timeout)
        try:
            reply = self.conn.send("Runtime.evaluate", params)
        finally:
            self.conn.timeout = saved

        details = reply.get("exceptionDetails")
        if isinstance(details, dict):
            thrown = details.get("exception")
            description = thrown.get("description") if isinstance(thrown, dict) else None
            raise HttpClientError(f"Runtime.evaluate threw: {description or details.get('text') or 'evaluation failed'}")
        return _unwrap_remote_object(reply.get("result"))

    def get_url(self) -> str:
        return self.eval_js("window.location.href") or ""

    def press_key(self, key: str, modifiers: int = 0) -> None:
        if len(key) == 1:
            code, key_code = f"Key{key.upper()}", ord(key.upper())
        else:
            code, key_code = key, VIRTUAL_KEY_CODES.get(key, 0)
        event = {"key": key, "code": code, "windowsVirtualKeyCode": key_code, "modifiers": modifiers}
        self.conn.send("Input.dispatchKeyEvent", {"type": "keyDown", **event})
        self.conn.send("Input.dispatchKeyEvent", {"type": "keyUp", **event})

    def type_text(self, text: str) -> None:
        """Insert text into the focused element.

        Falls back to one ``char`` key event per character when the target
        rejects Input.insertText.
        """
        if not text:
            return
        try:
            self.conn.send("Input.insertText", {"text": str(text)})
        except HttpClientError:
            for ch in text:
                self.conn.send("Input.dispatchKeyEvent", {"type": "char", "text": ch})

    def screenshot(self, format: str = "png") -> str:
        """Base64 screenshot of the viewport."""
        return self.conn.send("Page.captureScreenshot", {"format": format, "fromSurface": True}).get("data", "")

    def get_dom(self, selector: str | None = None) -> str:
        if selector:
            js = f"document.querySelector({json.dumps(selector)})?.outerHTML || ''"
        else:
            js = "document.documentElement.outerHTML"
        with suppress(HttpClientError):
            return self.eval_js(js) or ""
        return ""


__all__ = ["BrowserSession", "Connection"]
