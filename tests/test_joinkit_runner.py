"""Tests for the joinkit runner helpers."""

from __future__ import annotations

import runpy
import subprocess
from types import SimpleNamespace

import pytest

from joinkit import cli, runner


def test_run_commands_supports_dry_run(monkeypatch: pytest.MonkeyPatch, capsys):
    """Dry runs should only print the commands without executing them."""

    called = False

    def fake_run(*_args, **_kwargs):
        nonlocal called
        called = True

    monkeypatch.setattr(runner.subprocess, "run", fake_run)

    runner.run_commands([["k3s", "server", "--node-name", "control 1"]], dry_run=True)

    captured = capsys.readouterr()
    assert "$ k3s server --node-name 'control 1'" in captured.err
    assert captured.out == ""
    assert not called


def test_run_commands_captures_stderr(monkeypatch: pytest.MonkeyPatch):
    """stderr is captured so failures can report it."""

    recorded = {}

    def fake_run(command, *, check, text, stderr):
        recorded.update({"command": command, "check": check, "text": text, "stderr": stderr})
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(runner.subprocess, "run", fake_run)

    runner.run_commands([["true"]])

    assert recorded == {
        "command": ["true"],
        "check": False,
        "text": True,
        "stderr": subprocess.PIPE,
    }


def test_run_commands_stops_at_first_failure(monkeypatch: pytest.MonkeyPatch):
    """Failures should raise CommandError with the stderr output."""

    calls = []

    def fake_run(command, **_kwargs):
        calls.append(command)
        return SimpleNamespace(returncode=4, stderr="boom\n")

    monkeypatch.setattr(runner.subprocess, "run", fake_run)

    with pytest.raises(runner.CommandError) as excinfo:
        runner.run_commands([["false"], ["never"]])

    message = str(excinfo.value)
    assert "false" in message
    assert "boom" in message
    assert calls == [["false"]]
    assert excinfo.value.exit_code == 1


def test_capture_returns_stripped_stdout(monkeypatch: pytest.MonkeyPatch):
    def fake_run(command, **kwargs):
        assert kwargs["capture_output"] is True
        assert kwargs["timeout"] == 5
        return SimpleNamespace(returncode=0, stdout="ok\n", stderr="")

    monkeypatch.setattr(runner.subprocess, "run", fake_run)

    assert runner.capture(["kubectl", "get", "--raw=/readyz"], timeout=5) == "ok"


def test_capture_maps_timeouts_to_command_error(monkeypatch: pytest.MonkeyPatch):
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(runner.subprocess, "run", fake_run)

    with pytest.raises(runner.CommandError) as excinfo:
        runner.capture(["kubectl", "version"], timeout=2)

    assert excinfo.value.returncode == 124
    assert "timed out" in str(excinfo.value)


def test_main_module_invokes_cli_main(monkeypatch: pytest.MonkeyPatch):
    """The module entry point should exit using the CLI's main function."""

    monkeypatch.setattr(cli, "main", lambda: 42)

    with pytest.raises(SystemExit) as excinfo:
        runpy.run_module("joinkit.__main__", run_name="__main__")

    assert excinfo.value.code == 42
