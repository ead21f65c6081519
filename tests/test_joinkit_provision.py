"""Tests for sequencing the external control-plane commands."""

from __future__ import annotations

from pathlib import Path

import pytest

from joinkit import runner
from joinkit.cluster import provision
from joinkit.config import ControlPlaneConfig
from joinkit.errors import ConfigError, JoinkitError


@pytest.fixture
def recorded(monkeypatch: pytest.MonkeyPatch) -> list[tuple[list[str], bool]]:
    calls: list[tuple[list[str], bool]] = []

    def fake_run_commands(commands, *, dry_run=False, **_kwargs):
        for command in commands:
            calls.append((list(command), dry_run))

    monkeypatch.setattr(provision.runner, "run_commands", fake_run_commands)
    return calls


def test_provision_runs_init_then_waits_then_applies(recorded) -> None:
    config = ControlPlaneConfig(
        init_command=["k3s-init"], network_manifest="flannel.yaml", kubectl=["k3s", "kubectl"]
    )
    waits = []

    provision.provision_control_plane(
        config, wait=lambda kubectl, timeout: waits.append((kubectl, timeout))
    )

    assert recorded == [
        (["k3s-init"], False),
        (["k3s", "kubectl", "apply", "-f", "flannel.yaml"], False),
    ]
    assert waits == [(["k3s", "kubectl"], provision.DEFAULT_READY_TIMEOUT)]


def test_provision_dry_run_prints_readiness_probe(recorded) -> None:
    config = ControlPlaneConfig(init_command=["k3s-init"], network_manifest="cni.yaml")

    def fail_wait(*_args, **_kwargs):
        raise AssertionError("dry runs must not poll")

    provision.provision_control_plane(config, dry_run=True, wait=fail_wait)

    assert [command for command, _ in recorded] == [
        ["k3s-init"],
        ["kubectl", "get", "--raw=/readyz"],
        ["kubectl", "apply", "-f", "cni.yaml"],
    ]
    assert all(dry_run for _, dry_run in recorded)


def test_provision_without_commands_is_a_no_op(
    recorded, capsys: pytest.CaptureFixture[str]
) -> None:
    provision.provision_control_plane(ControlPlaneConfig())

    assert recorded == []
    assert "no init command configured" in capsys.readouterr().err


def test_provision_stops_when_init_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing(commands, **_kwargs):
        raise runner.CommandError(list(commands)[0], 1, stderr="port in use")

    monkeypatch.setattr(provision.runner, "run_commands", failing)
    config = ControlPlaneConfig(init_command=["k3s-init"], network_manifest="cni.yaml")

    with pytest.raises(runner.CommandError, match="port in use"):
        provision.provision_control_plane(config, wait=lambda *a, **k: None)


def test_wait_for_control_plane_polls_until_ok() -> None:
    outputs = iter([runner.CommandError(["kubectl"], 1, stderr="refused"), "not ok", "ok"])
    sleeps: list[float] = []

    def capture(command, *, timeout):
        assert command == ["kubectl", "get", "--raw=/readyz"]
        value = next(outputs)
        if isinstance(value, Exception):
            raise value
        return value

    provision.wait_for_control_plane(
        ["kubectl"], timeout=60, interval=2, capture=capture, sleep=sleeps.append
    )

    assert sleeps == [2, 2]


def test_wait_for_control_plane_times_out() -> None:
    now = [0.0]

    def monotonic() -> float:
        return now[0]

    def sleep(seconds: float) -> None:
        now[0] += seconds

    with pytest.raises(JoinkitError, match="Timed out after 10s.*starting"):
        provision.wait_for_control_plane(
            ["kubectl"],
            timeout=10,
            interval=5,
            capture=lambda command, *, timeout: "starting",
            sleep=sleep,
            monotonic=monotonic,
        )


def test_read_trust_credential(tmp_path: Path) -> None:
    path = tmp_path / "ca.crt"
    path.write_bytes(b"PEM")

    assert provision.read_trust_credential(path) == b"PEM"
    with pytest.raises(ConfigError, match="not found"):
        provision.read_trust_credential(tmp_path / "missing.crt")
    (tmp_path / "empty.crt").write_bytes(b"\n")
    with pytest.raises(ConfigError, match="empty"):
        provision.read_trust_credential(tmp_path / "empty.crt")
