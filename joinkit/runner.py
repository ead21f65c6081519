"""Utility helpers for running external provisioning commands consistently."""

from __future__ import annotations

import shlex
import subprocess
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass


@dataclass(slots=True)
class CommandError(RuntimeError):
    """Raised when a subprocess exits with a non-zero status."""

    command: Sequence[str]
    returncode: int
    stderr: str | None = None

    kind = "Error"
    exit_code = 1

    def __str__(self) -> str:
        message = f"{format_command(self.command)} exited with status {self.returncode}"
        if self.stderr:
            stderr = self.stderr.strip()
            if stderr:
                message = f"{message}\n{stderr}"
        return message


def format_command(command: Sequence[str]) -> str:
    """Render a subprocess command for display or logging."""

    return " ".join(shlex.quote(part) for part in command)


def run_commands(commands: Iterable[Sequence[str]], *, dry_run: bool = False) -> None:
    """Run each command, stopping at the first failure.

    When ``dry_run`` is ``True`` the commands are only printed.
    """

    for command in commands:
        printable = format_command(command)
        print(f"$ {printable}", file=sys.stderr, flush=True)
        if dry_run:
            continue
        result = subprocess.run(
            command,
            check=False,
            text=True,
            stderr=subprocess.PIPE,
        )
        if result.returncode != 0:
            raise CommandError(command, result.returncode, stderr=result.stderr)


def capture(command: Sequence[str], *, timeout: float | None = None) -> str:
    """Run ``command`` and return its stripped stdout, raising on failure."""

    try:
        result = subprocess.run(
            command,
            check=False,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command, 124, stderr=f"timed out after {exc.timeout}s") from exc
    if result.returncode != 0:
        raise CommandError(command, result.returncode, stderr=result.stderr)
    return (result.stdout or "").strip()


__all__ = ["CommandError", "capture", "format_command", "run_commands"]
