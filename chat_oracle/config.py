from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BASE_URL = "https://chatgpt.com/"

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    # Chromium entries kept as fallback.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap versions last resort (they ignore --user-data-dir)
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def oracle_home() -> Path:
    return Path.home() / ".oracle"


def _env_float(name: str, default: float, *, lo: float, hi: float, scale: float = 1.0) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw) * scale
    except ValueError:
        return default
    return max(lo, min(value, hi))


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(lo, min(value, hi))


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class OracleConfig:
    """Process-wide settings for callers and workers.

    Durations are seconds. Every value can be overridden from the environment
    (see `from_env`); per-run overrides live in `RunOptions`.
    """

    runs_root: str
    approvals_dir: str
    profile_path: str
    binary_path: str = "google-chrome"
    base_url: str = DEFAULT_BASE_URL
    cdp_port: int = 9222
    headless: bool = False
    extra_flags: list[str] = field(default_factory=list)
    poll_interval: float = 0.5
    run_timeout: float = 4 * 60 * 60.0
    stall_timeout: float = 5 * 60.0
    op_timeout: float = 8.0
    max_attempts: int = 2
    session_retries: int = 3
    approval_poll: float = 2.0
    approval_timeout: float = 10 * 60.0
    runs_ttl: float = 48 * 60 * 60.0
    notificli_path: str | None = None
    force_kill: bool = False
    capture_debug: bool = True

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("ORACLE_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> OracleConfig:
        home = oracle_home()
        runs_root = expand_path(os.environ.get("ORACLE_RUNS_ROOT") or str(home / "runs"))
        approvals = expand_path(os.environ.get("ORACLE_APPROVALS_DIR") or str(home / "approvals"))
        profile = expand_path(os.environ.get("ORACLE_BROWSER_PROFILE") or str(home / "chrome"))
        base_url = (os.environ.get("ORACLE_BASE_URL") or "").strip() or DEFAULT_BASE_URL
        flags_raw = os.environ.get("ORACLE_BROWSER_FLAGS", "")
        notificli = (os.environ.get("ORACLE_NOTIFICLI_PATH") or "").strip() or None
        return cls(
            runs_root=runs_root,
            approvals_dir=approvals,
            profile_path=profile,
            binary_path=cls.detect_binary(),
            base_url=base_url,
            cdp_port=_env_int("ORACLE_BROWSER_PORT", 9222, lo=1, hi=65535),
            headless=_env_flag("ORACLE_HEADLESS", False),
            extra_flags=[flag for flag in flags_raw.split(",") if flag.strip()],
            poll_interval=_env_float("ORACLE_POLL_MS", 0.5, lo=0.05, hi=10.0, scale=0.001),
            run_timeout=_env_float("ORACLE_TIMEOUT_MS", 4 * 60 * 60.0, lo=1.0, hi=24 * 60 * 60.0, scale=0.001),
            stall_timeout=_env_float("ORACLE_STALL_MS", 5 * 60.0, lo=1.0, hi=60 * 60.0, scale=0.001),
            op_timeout=_env_float("ORACLE_OP_TIMEOUT", 8.0, lo=1.0, hi=60.0),
            max_attempts=_env_int("ORACLE_MAX_ATTEMPTS", 2, lo=1, hi=10),
            session_retries=_env_int("ORACLE_SESSION_RETRIES", 3, lo=1, hi=10),
            approval_poll=_env_float("ORACLE_APPROVAL_POLL_MS", 2.0, lo=0.05, hi=60.0, scale=0.001),
            approval_timeout=_env_float(
                "ORACLE_APPROVAL_TIMEOUT_MS", 10 * 60.0, lo=1.0, hi=24 * 60 * 60.0, scale=0.001
            ),
            runs_ttl=_env_float("ORACLE_RUNS_TTL_HOURS", 48 * 60 * 60.0, lo=60.0, hi=365 * 24 * 3600.0, scale=3600.0),
            notificli_path=notificli,
            force_kill=_env_flag("ORACLE_FORCE_KILL", False),
            capture_debug=_env_flag("ORACLE_CAPTURE_DEBUG", True),
        )

    def to_env(self) -> dict[str, str]:
        """Environment that makes `from_env` in a child process rebuild this config."""
        env = {
            "ORACLE_RUNS_ROOT": self.runs_root,
            "ORACLE_APPROVALS_DIR": self.approvals_dir,
            "ORACLE_BROWSER_PROFILE": self.profile_path,
            "ORACLE_BROWSER_BINARY": self.binary_path,
            "ORACLE_BASE_URL": self.base_url,
            "ORACLE_BROWSER_PORT": str(self.cdp_port),
            "ORACLE_HEADLESS": "1" if self.headless else "0",
            "ORACLE_BROWSER_FLAGS": ",".join(self.extra_flags),
            "ORACLE_POLL_MS": str(int(self.poll_interval * 1000)),
            "ORACLE_TIMEOUT_MS": str(int(self.run_timeout * 1000)),
            "ORACLE_STALL_MS": str(int(self.stall_timeout * 1000)),
            "ORACLE_OP_TIMEOUT": str(self.op_timeout),
            "ORACLE_MAX_ATTEMPTS": str(self.max_attempts),
            "ORACLE_SESSION_RETRIES": str(self.session_retries),
            "ORACLE_APPROVAL_POLL_MS": str(int(self.approval_poll * 1000)),
            "ORACLE_APPROVAL_TIMEOUT_MS": str(int(self.approval_timeout * 1000)),
            "ORACLE_RUNS_TTL_HOURS": str(self.runs_ttl / 3600.0),
            "ORACLE_FORCE_KILL": "1" if self.force_kill else "0",
            "ORACLE_CAPTURE_DEBUG": "1" if self.capture_debug else "0",
        }
        if self.notificli_path:
            env["ORACLE_NOTIFICLI_PATH"] = self.notificli_path
        return env
