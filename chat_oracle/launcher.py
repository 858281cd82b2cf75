from __future__ import annotations

import contextlib
import logging
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .config import OracleConfig, expand_path
from .fs_utils import pid_alive
from .http_client import HttpClientError, http_get_json
from .session_cdp import CdpConnection

logger = logging.getLogger("chat_oracle.launcher")

BASE_FLAGS = (
    "--remote-allow-origins=*",
    "--disable-fre",
    "--no-first-run",
    "--no-default-browser-check",
    # Background tabs must keep streaming while the user works elsewhere.
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
)


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str
    log_path: str | None = None
    log_tail: str | None = None


def _tail_text(path: str | None, max_chars: int = 4000) -> str | None:
    if not path:
        return None
    try:
        raw = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw[-max_chars:]


def _wait_until(predicate, timeout: float, interval: float) -> bool:  # noqa: ANN001
    deadline = time.time() + max(0.0, timeout)
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class BrowserLauncher:
    """Owns the automation browser bound to one profile and debugging port.

    The browser is started detached so it outlives the worker that launched
    it; later workers find it again through the port and the profile lock.
    """

    def __init__(self, config: OracleConfig | None = None) -> None:
        self.config = config or OracleConfig.from_env()
        self.process: subprocess.Popen | None = None

    @property
    def endpoint(self) -> str:
        return f"http://127.0.0.1:{self.config.cdp_port}"

    @property
    def profile_dir(self) -> Path:
        return Path(expand_path(self.config.profile_path))

    def cdp_version(self, timeout: float = 0.8) -> dict:
        payload = http_get_json(f"{self.endpoint}/json/version", timeout=timeout)
        return payload if isinstance(payload, dict) else {}

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        try:
            self.cdp_version(timeout=timeout)
        except HttpClientError:
            return False
        return True

    def _port_free(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.config.cdp_port)) != 0
            except OSError:
                return False

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={self.profile_dir}",
            *BASE_FLAGS,
            "--headless=new" if self.config.headless else "--window-size=1280,900",
            *self.config.extra_flags,
            *(extra or []),
        ]
        return [self.config.binary_path, *flags]

    def _new_log_path(self) -> str:
        log_dir = self.profile_dir.parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / f"chrome_launch_{int(time.time() * 1000)}.log")

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        """Attach to a live browser on the configured port or launch one."""
        if self.cdp_ready():
            return LaunchResult([], False, "Chrome already listening on CDP port")
        if not self._port_free():
            return LaunchResult([], False, f"Port {self.config.cdp_port} already in use but CDP is not reachable")

        self.profile_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_launch_command()
        log_path = self._new_log_path()
        try:
            with open(log_path, "ab", buffering=0) as log_fh:
                self.process = subprocess.Popen(
                    cmd,
                    stdout=log_fh,
                    stderr=log_fh,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc), log_path=log_path, log_tail=_tail_text(log_path))

        process = self.process
        if _wait_until(lambda: self.cdp_ready() or process.poll() is not None, timeout, 0.1) and self.cdp_ready():
            logger.info("[launch] chrome pid=%s port=%s", process.pid, self.config.cdp_port)
            return LaunchResult(cmd, True, "Chrome launched", log_path=log_path)
        reason = "Chrome exited during launch" if process.poll() is not None else "Chrome launch timed out"
        return LaunchResult(cmd, False, reason, log_path=log_path, log_tail=_tail_text(log_path))

    def browser_pid(self) -> int | None:
        """Pid of the browser owning the profile.

        Prefers the process this launcher started; otherwise reads Chrome's
        SingletonLock link (``<host>-<pid>``) in the profile directory.
        """
        if self.process is not None and self.process.poll() is None:
            return self.process.pid
        try:
            target = os.readlink(self.profile_dir / "SingletonLock")
        except OSError:
            return None
        pid_text = target.rpartition("-")[2]
        if not pid_text.isdigit():
            return None
        pid = int(pid_text)
        return pid if pid_alive(pid) else None

    def request_shutdown(self) -> bool:
        """Send Browser.close to the browser target; False if it is unreachable."""
        try:
            ws_url = self.cdp_version().get("webSocketDebuggerUrl")
            if not ws_url:
                return False
            conn = CdpConnection(ws_url, timeout=3.0)
        except HttpClientError as exc:
            logger.info("[recovery] Browser.close unavailable: %s", exc)
            return False
        try:
            conn.send("Browser.close")
        except HttpClientError as exc:
            # The socket usually drops as the browser exits.
            logger.info("[recovery] Browser.close returned: %s", exc)
        finally:
            conn.close()
        return True

    def shutdown_pid(self, pid: int, *, timeout: float = 10.0, force_kill: bool | None = None) -> bool:
        """SIGTERM, wait, then SIGKILL only when force kill is enabled."""

        def gone() -> bool:
            return not pid_alive(pid)

        if gone():
            return True
        with contextlib.suppress(OSError):
            os.kill(pid, signal.SIGTERM)
        if _wait_until(gone, timeout, 0.25):
            return True
        force = self.config.force_kill if force_kill is None else force_kill
        if not force:
            logger.info("[recovery] chrome pid %s still alive; skipping SIGKILL (ORACLE_FORCE_KILL=1 to enable)", pid)
            return False
        logger.info("[recovery] force killing chrome pid %s", pid)
        with contextlib.suppress(OSError):
            os.kill(pid, signal.SIGKILL)
        return _wait_until(gone, 2.0, 0.25)

    def stop(self, *, timeout: float = 10.0) -> bool:
        """Stop the profile's browser. True once no browser owns the profile."""
        pid = self.browser_pid()
        if self.cdp_ready() and self.request_shutdown():
            if pid is None or _wait_until(lambda: not pid_alive(pid), 8.0, 0.25):
                logger.info("[recovery] chrome exited after Browser.close")
                return True
        if pid is None:
            return not self.cdp_ready()
        logger.info("[recovery] sending SIGTERM to chrome pid %s", pid)
        return self.shutdown_pid(pid, timeout=timeout)

    def restart(self, timeout: float = 10.0) -> LaunchResult:
        """Stop the profile's browser and launch a fresh one."""
        if not self.stop():
            return LaunchResult([], False, "Chrome did not exit; restart aborted")
        self.process = None
        _wait_until(self._port_free, 3.0, 0.05)
        result = self.ensure_running(timeout=timeout)
        result.message = f"Restarted Chrome. {result.message}"
        return result


__all__ = ["BrowserLauncher", "LaunchResult"]
