"""
Tab management for the shared automation browser.

A worker keeps one tab per run; its target id is persisted in the run options
so a resumed worker can reattach to the same conversation instead of opening
a new one.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from typing import Any

from .browser_session import BrowserSession
from .config import OracleConfig
from .http_client import HttpClientError, http_get_json
from .session_cdp import CdpConnection

logger = logging.getLogger("chat_oracle.session")


class SessionManager:
    def __init__(self, config: OracleConfig) -> None:
        self.config = config
        self._session_tab_id: str | None = None

    @property
    def tab_id(self) -> str | None:
        return self._session_tab_id

    def _endpoint(self, path: str) -> str:
        return f"http://127.0.0.1:{self.config.cdp_port}{path}"

    def _get_targets(self) -> list[dict[str, Any]]:
        """Get list of browser targets."""
        try:
            payload = http_get_json(self._endpoint("/json/list"))
        except HttpClientError:
            return []
        return [t for t in payload if isinstance(t, dict)] if isinstance(payload, list) else []

    def _get_browser_ws(self) -> str:
        """Get browser-level WebSocket URL."""
        version = http_get_json(self._endpoint("/json/version"))
        ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
        if not ws_url:
            raise HttpClientError("CDP browser WebSocket URL not found")
        return ws_url

    def _create_tab(self, url: str = "about:blank") -> str:
        """Create a new browser tab, return tab ID."""
        conn = CdpConnection(self._get_browser_ws(), timeout=5.0)
        try:
            result = conn.send("Target.createTarget", {"url": url})
            tab_id = result.get("targetId")
            if not tab_id:
                raise HttpClientError("Failed to create browser tab")
            return tab_id
        finally:
            conn.close()

    def _get_tab_ws_url(self, tab_id: str) -> str | None:
        for target in self._get_targets():
            if target.get("id") == tab_id and target.get("type", "page") == "page":
                return target.get("webSocketDebuggerUrl")
        return None

    def get_session(self, target_id: str | None = None, *, timeout: float = 8.0) -> BrowserSession:
        """
        Attach to ``target_id`` when it still exists, otherwise open a new tab.

        The chosen tab id is remembered as the session tab.
        """
        tab_id = target_id or self._session_tab_id
        ws_url = self._get_tab_ws_url(tab_id) if tab_id else None
        if not ws_url:
            if tab_id:
                logger.info("[session] tab %s is gone; opening a new one", tab_id)
            tab_id = self._create_tab()
            ws_url = self._get_tab_ws_url(tab_id)
        if not ws_url or not tab_id:
            raise HttpClientError("Failed to get session tab WebSocket URL")

        self._session_tab_id = tab_id
        conn = CdpConnection(ws_url, timeout=timeout)
        return BrowserSession(conn, tab_id)

    def close_tab(self, tab_id: str | None = None) -> bool:
        """Close a tab. Closes session tab if no ID provided."""
        target_id = tab_id or self._session_tab_id
        if not target_id:
            return False
        try:
            conn = CdpConnection(self._get_browser_ws(), timeout=3.0)
        except HttpClientError:
            return False
        try:
            conn.send("Target.closeTarget", {"targetId": target_id})
        except HttpClientError:
            return False
        finally:
            with suppress(OSError):
                conn.close()
        if target_id == self._session_tab_id:
            self._session_tab_id = None
        return True


__all__ = ["SessionManager"]
