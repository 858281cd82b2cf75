"""
Error taxonomy shared by callers, the worker and the run record.

Provides:
- OracleError: structured error (kind + message + suggestion)
- with_retry: retry decorator with exponential backoff for SESSION errors
- is_detached_context_error: classify CDP errors that require a fresh page
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from .http_client import HttpClientError

INPUT = "INPUT"
NOT_FOUND = "NOT_FOUND"
TERMINAL_CONFLICT = "TERMINAL_CONFLICT"
SESSION = "SESSION"
NEEDS_USER = "NEEDS_USER"
TIMEOUT = "TIMEOUT"
BROWSER_FAILURE = "BROWSER_FAILURE"
INTERNAL = "INTERNAL"

ERROR_KINDS = frozenset({INPUT, NOT_FOUND, TERMINAL_CONFLICT, SESSION, NEEDS_USER, TIMEOUT, BROWSER_FAILURE, INTERNAL})


@dataclass
class OracleError(Exception):
    """Structured error surfaced to callers and persisted into run records."""

    kind: str
    message: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in ERROR_KINDS:
            raise ValueError(f"unknown error kind: {self.kind}")

    def __str__(self) -> str:
        if self.suggestion:
            return f"[{self.kind}] {self.message}. Suggestion: {self.suggestion}"
        return f"[{self.kind}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "suggestion": self.suggestion}


class NeedsUserError(OracleError):
    """Raised inside the worker when a human must act before the run continues."""

    def __init__(self, reason: str, message: str, suggestion: str = "") -> None:
        super().__init__(NEEDS_USER, message, suggestion, {"reason": reason})
        self.reason = reason


class CanceledError(Exception):
    """Cooperative cancellation observed by a wait loop."""


_DETACHED_MARKERS = (
    "detached frame",
    "execution context was destroyed",
    "cannot find context with specified id",
    "target closed",
    "session closed",
    "no target with given id",
)


def is_detached_context_error(error: BaseException | str) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _DETACHED_MARKERS)


def session_error(exc: BaseException, action: str) -> OracleError:
    """Map a transport failure to a SESSION error."""
    return OracleError(
        SESSION,
        f"{action} failed: {exc}",
        "Check that the browser is running and reachable on its debugging port",
        {"action": action},
    )


def with_retry(max_attempts: int = 3, delay: float = 0.3, backoff: float = 1.5) -> Callable:
    """Decorator for automatic retry with exponential backoff.

    Only transport-level failures (HttpClientError, SESSION errors) are
    retried; anything else propagates immediately.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Exception | None = None
            current_delay = delay
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except HttpClientError as e:
                    last_error = e
                except OracleError as e:
                    if e.kind != SESSION:
                        raise
                    last_error = e
                if attempt < max_attempts - 1:
                    time.sleep(current_delay)
                    current_delay *= backoff
            if last_error:
                raise last_error
            raise RuntimeError("Retry exhausted without error")

        return wrapper

    return decorator
