from __future__ import annotations

import subprocess

from chat_oracle.restart import notify


def test_notificli_approve(monkeypatch) -> None:  # noqa: ANN001
    seen: list[list[str]] = []

    def fake_run(command: list[str], timeout: float) -> str:  # noqa: ARG001
        seen.append(command)
        return "Approve restart"

    monkeypatch.setattr(notify, "_run", fake_run)
    assert notify.notify_with_notificli("Title", "Body", command="/opt/notificli") is True
    assert seen[0][0] == "/opt/notificli"
    assert "Body" in seen[0]


def test_notificli_body_click_counts_as_approval(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(notify, "_run", lambda command, timeout: "default")
    assert notify.notify_with_notificli("Title", "Body", command="/opt/notificli") is True


def test_notificli_cancel(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(notify, "_run", lambda command, timeout: "Cancel")
    assert notify.notify_with_notificli("Title", "Body", command="/opt/notificli") is False


def test_falls_back_to_applescript_then_unreachable(monkeypatch) -> None:  # noqa: ANN001
    def failing(command: list[str], timeout: float) -> str:
        raise subprocess.CalledProcessError(1, command)

    monkeypatch.setattr(notify, "_run", failing)
    monkeypatch.setattr(notify, "OSASCRIPT", "/nonexistent/osascript")
    assert notify.notify_with_notificli("Title", "Body", command="/opt/notificli") is None


def test_resolve_notificli_prefers_env(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("ORACLE_NOTIFICLI_PATH", " /custom/notificli ")
    assert notify.resolve_notificli() == "/custom/notificli"
    monkeypatch.delenv("ORACLE_NOTIFICLI_PATH")
    monkeypatch.setattr(notify.shutil, "which", lambda name: None)
    assert notify.resolve_notificli() is None
