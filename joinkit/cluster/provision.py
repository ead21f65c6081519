"""External control-plane operations: orchestrator init and network apply.

These are opaque commands owned by the orchestrator. joinkit only sequences
them, stops at the first failure and records the result.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Callable, Sequence

from .. import runner
from ..config import ControlPlaneConfig
from ..errors import ConfigError, JoinkitError

DEFAULT_READY_TIMEOUT = 300
DEFAULT_READY_INTERVAL = 5


def _log(message: str) -> None:
    print(f"[joinkit] {message}", file=sys.stderr, flush=True)


def build_readyz_command(kubectl: Sequence[str]) -> list[str]:
    return [*kubectl, "get", "--raw=/readyz"]


def build_apply_command(kubectl: Sequence[str], manifest: str) -> list[str]:
    return [*kubectl, "apply", "-f", manifest]


def read_trust_credential(path: Path) -> bytes:
    """Load the orchestrator's signing credential (for example its CA cert)."""

    try:
        data = Path(path).read_bytes()
    except FileNotFoundError as exc:
        raise ConfigError(f"Trust credential not found: {path}") from exc
    if not data.strip():
        raise ConfigError(f"Trust credential is empty: {path}")
    return data


def wait_for_control_plane(
    kubectl: Sequence[str],
    *,
    timeout: float = DEFAULT_READY_TIMEOUT,
    interval: float = DEFAULT_READY_INTERVAL,
    capture: Callable[..., str] = runner.capture,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> None:
    """Poll ``/readyz`` until the API server reports ``ok``."""

    command = build_readyz_command(kubectl)
    deadline = monotonic() + timeout
    last_error = "no response"
    while True:
        try:
            output = capture(command, timeout=max(interval, 1))
        except runner.CommandError as exc:
            last_error = str(exc).splitlines()[-1]
        else:
            if output.strip() == "ok":
                _log("control plane reports ready")
                return
            last_error = output.strip() or "empty response"
        if monotonic() >= deadline:
            raise JoinkitError(
                f"Timed out after {timeout:.0f}s waiting for the control plane: {last_error}"
            )
        sleep(max(interval, 1))


def provision_control_plane(
    config: ControlPlaneConfig,
    *,
    dry_run: bool = False,
    ready_timeout: float = DEFAULT_READY_TIMEOUT,
    wait: Callable[..., None] = wait_for_control_plane,
) -> None:
    """Run the external init command, then apply the network manifest.

    Each step is skipped when not configured. Any failure stops the sequence.
    """

    if config.init_command:
        runner.run_commands([config.init_command], dry_run=dry_run)
    else:
        _log("no init command configured; assuming the control plane is already initialized")

    if not config.network_manifest:
        return
    if dry_run:
        runner.run_commands([build_readyz_command(config.kubectl)], dry_run=True)
    else:
        wait(config.kubectl, timeout=ready_timeout)
    runner.run_commands(
        [build_apply_command(config.kubectl, config.network_manifest)], dry_run=dry_run
    )


__all__ = [
    "build_apply_command",
    "build_readyz_command",
    "provision_control_plane",
    "read_trust_credential",
    "wait_for_control_plane",
]
