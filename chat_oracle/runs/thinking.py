"""Incremental reads of the reasoning channel.

Callers that poll ``thinking`` repeatedly only want the text revealed since
their previous read. The cursor lives in ``thinking.json`` next to the run;
a prefix fingerprint detects when the underlying text was rewritten, in which
case the whole text is returned again.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path

from ..fs_utils import read_json_if_exists, write_json_atomic
from . import paths
from .models import utc_now

PREFIX_CHARS = 200


@dataclass
class ThinkingCursor:
    cursor: int
    prefix: str
    updated_at: str


def build_cursor(full_text: str) -> ThinkingCursor:
    return ThinkingCursor(cursor=len(full_text), prefix=full_text[:PREFIX_CHARS], updated_at=utc_now())


def compute_increment(full_text: str, state: ThinkingCursor | None) -> tuple[str, ThinkingCursor]:
    next_state = build_cursor(full_text)
    if state is None:
        return full_text, next_state
    if not full_text.startswith(state.prefix) or state.cursor > len(full_text):
        return full_text, next_state
    return full_text[state.cursor :], next_state


def read_cursor(run_path: Path) -> ThinkingCursor | None:
    data = read_json_if_exists(paths.thinking_path(run_path))
    if not isinstance(data, dict):
        return None
    try:
        return ThinkingCursor(int(data["cursor"]), str(data["prefix"]), str(data.get("updated_at", "")))
    except (KeyError, TypeError, ValueError):
        return None


def save_cursor(run_path: Path, state: ThinkingCursor) -> None:
    write_json_atomic(paths.thinking_path(run_path), asdict(state))


def read_increment(run_path: Path, full_text: str) -> str:
    """Return the unread part of ``full_text`` and advance the cursor."""
    chunk, next_state = compute_increment(full_text, read_cursor(run_path))
    save_cursor(run_path, next_state)
    return chunk
