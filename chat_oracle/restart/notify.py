"""Ask a human to approve a browser restart.

Tries ``notificli`` (an actionable desktop notification), then an
``osascript`` alert. ``None`` means nobody could be asked, which callers
treat as a denial.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Callable

logger = logging.getLogger("chat_oracle.restart")

Notifier = Callable[[str, str], bool | None]

APPROVE_LABEL = "Approve restart"
CANCEL_LABEL = "Cancel"
OSASCRIPT = "/usr/bin/osascript"
# Upper bound on how long a human may take to answer.
PROMPT_TIMEOUT = 15 * 60.0


def resolve_notificli(override: str | None = None) -> str | None:
    override = override or os.environ.get("ORACLE_NOTIFICLI_PATH")
    if override and override.strip():
        return override.strip()
    return shutil.which("notificli")


def _run(command: list[str], timeout: float) -> str:
    proc = subprocess.run(command, capture_output=True, text=True, timeout=timeout, check=False)
    if proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, command, proc.stdout, proc.stderr)
    return proc.stdout.strip()


def _escape_applescript(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def notify_with_applescript(title: str, message: str, *, timeout: float = PROMPT_TIMEOUT) -> bool | None:
    if not os.path.exists(OSASCRIPT):
        return None
    script = "\n".join(
        [
            "try",
            f"button returned of (display alert {_escape_applescript(title)} message "
            f"{_escape_applescript(message)} buttons {{\"{APPROVE_LABEL}\",\"{CANCEL_LABEL}\"}} "
            f'default button "{APPROVE_LABEL}" cancel button "{CANCEL_LABEL}")',
            "on error",
            f'return "{CANCEL_LABEL}"',
            "end try",
        ]
    )
    try:
        output = _run([OSASCRIPT, "-e", script], timeout)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.info("[restart] osascript unavailable: %s", exc)
        return None
    return output.strip().lower() == APPROVE_LABEL.lower()


def notify_with_notificli(
    title: str, message: str, *, command: str | None = None, timeout: float = PROMPT_TIMEOUT
) -> bool | None:
    binary = command or resolve_notificli()
    if not binary:
        return notify_with_applescript(title, message, timeout=timeout)
    try:
        choice = _run(
            [binary, "-title", title, "-message", message, "-actions", f"{APPROVE_LABEL},{CANCEL_LABEL}"],
            timeout,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.info("[restart] notificli failed: %s", exc)
        return notify_with_applescript(title, message, timeout=timeout)
    if not choice:
        return notify_with_applescript(title, message, timeout=timeout)
    normalized = choice.strip().lower()
    # "default" is a click on the notification body.
    return normalized in {APPROVE_LABEL.lower(), "default"}


def notify_restart(title: str, message: str) -> bool | None:
    return notify_with_notificli(title, message)


__all__ = ["Notifier", "notify_restart", "notify_with_applescript", "notify_with_notificli", "resolve_notificli"]
