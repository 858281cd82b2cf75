"""Raw Chrome DevTools Protocol connection over websocket-client."""

from __future__ import annotations

import json
import socket
import time
from collections import deque
from contextlib import suppress
from typing import Any

from .http_client import HttpClientError

# Bounded backlog of events seen while waiting on something else.
MAX_PENDING_EVENTS = 500
# websocket-client recv() blocks forever without a socket timeout.
RECV_SLICE = 0.5


def _params(message: dict[str, Any]) -> dict[str, Any]:
    params = message.get("params")
    return params if isinstance(params, dict) else {}


class CdpConnection:
    """One websocket to a page or browser target.

    Command replies are matched by id. Events received in the meantime are
    parked so a later ``wait_for_event`` (load, dialog) still sees them.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0):
        import websocket

        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except (OSError, websocket.WebSocketException) as exc:
            raise HttpClientError(f"CDP connect failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._ids = 0
        self._pending: deque[dict[str, Any]] = deque(maxlen=MAX_PENDING_EVENTS)

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        """Take the oldest parked event with this name, if any."""
        for message in self._pending:
            if message.get("method") == event_name:
                self._pending.remove(message)
                return _params(message)
        return None

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._ids += 1
        payload: dict[str, Any] = {"id": self._ids, "method": method}
        if params:
            payload["params"] = params
        try:
            self.ws.settimeout(min(2.0, max(RECV_SLICE, float(self.timeout))))
            self.ws.send(json.dumps(payload))
        except Exception as exc:  # noqa: BLE001
            raise HttpClientError(str(exc)) from exc

        deadline = time.time() + self.timeout
        while (message := self._next_message(deadline)) is not None:
            if message.get("id") != payload["id"]:
                continue
            if "error" in message:
                raise HttpClientError(f"{method}: {message['error']}")
            result = message.get("result")
            return result if isinstance(result, dict) else {}
        raise HttpClientError(f"CDP response timed out ({method})")

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        parked = self.pop_event(event_name)
        if parked is not None:
            return parked
        deadline = time.time() + timeout
        while (message := self._next_message(deadline, park=False)) is not None:
            if message.get("method") == event_name:
                return _params(message)
            if "id" not in message:
                self._pending.append(message)
        return None

    def _next_message(self, deadline: float, *, park: bool = True) -> dict[str, Any] | None:
        """Next decoded message before ``deadline``; events are parked when ``park``.

        Returns None once the deadline passes.
        """
        while (remaining := deadline - time.time()) > 0:
            try:
                self.ws.settimeout(min(RECV_SLICE, remaining))
                raw = self.ws.recv()
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                    continue
                raise HttpClientError(str(exc)) from exc
            try:
                message = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                continue
            if not isinstance(message, dict):
                continue
            if park and "id" not in message and isinstance(message.get("method"), str):
                self._pending.append(message)
                continue
            return message
        return None

    def abort(self) -> None:
        """Shut the raw socket down.

        websocket-client close() can block on internal locks when the page is
        wedged; a socket shutdown always returns.
        """
        sock = getattr(self.ws, "sock", None)
        if sock is None:
            return
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        with suppress(OSError):
            sock.close()

    def close(self) -> None:
        self.abort()


__all__ = ["CdpConnection"]
