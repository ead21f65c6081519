"""Load joinkit settings from TOML with environment overrides."""

from __future__ import annotations

import os
import shlex
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

CONFIG_ENV = "JOINKIT_CONFIG"
STATE_DIR_ENV = "JOINKIT_STATE_DIR"
DEFAULT_CONFIG_PATH = Path("/etc/joinkit/joinkit.toml")
DEFAULT_STATE_DIR = Path("/var/lib/joinkit")
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 9443
DEFAULT_TOKEN_TTL = 24 * 60 * 60
DEFAULT_MAX_USES = 1
DEFAULT_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 16.0
DEFAULT_TIMEOUT = 10.0
DEFAULT_HEARTBEAT_MAX_AGE = 120.0
DEFAULT_TCP_PORT = 10250
DEFAULT_TCP_TIMEOUT = 3.0
PROBES = ("heartbeat", "tcp")


@dataclass(slots=True)
class ControlPlaneConfig:
    """Settings for the control-plane host."""

    state_dir: Path = DEFAULT_STATE_DIR
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = DEFAULT_LISTEN_PORT
    endpoint: str | None = None
    trust_credential: Path | None = None
    init_command: list[str] = field(default_factory=list)
    network_manifest: str | None = None
    kubectl: list[str] = field(default_factory=lambda: ["kubectl"])


@dataclass(slots=True)
class TokenConfig:
    """Defaults applied by ``issue-token`` when flags are omitted."""

    ttl: int = DEFAULT_TOKEN_TTL
    max_uses: int = DEFAULT_MAX_USES


@dataclass(slots=True)
class EnrollConfig:
    """Worker-side enrollment settings."""

    state_dir: Path = DEFAULT_STATE_DIR / "node"
    attempts: int = DEFAULT_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    timeout: float = DEFAULT_TIMEOUT


@dataclass(slots=True)
class HealthConfig:
    """How ``health-check`` decides whether a node is reachable."""

    probe: str = "heartbeat"
    heartbeat_max_age: float = DEFAULT_HEARTBEAT_MAX_AGE
    tcp_port: int = DEFAULT_TCP_PORT
    tcp_timeout: float = DEFAULT_TCP_TIMEOUT


@dataclass(slots=True)
class JoinkitConfig:
    """Fully parsed configuration."""

    control_plane: ControlPlaneConfig = field(default_factory=ControlPlaneConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    enroll: EnrollConfig = field(default_factory=EnrollConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    source: Path | None = None


def _expand_path(value: str, *, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table.")
    return value


def _number(section: dict[str, Any], key: str, default: float, *, label: str) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label}.{key} must be a number, got {value!r}.")
    if value <= 0:
        raise ConfigError(f"{label}.{key} must be greater than zero.")
    return value


def _integer(section: dict[str, Any], key: str, default: int, *, label: str) -> int:
    value = _number(section, key, default, label=label)
    if int(value) != value:
        raise ConfigError(f"{label}.{key} must be an integer, got {value!r}.")
    return int(value)


def _command(value: Any, *, label: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            return shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"{label} is not a valid command line: {exc}.") from exc
    if isinstance(value, list) and all(isinstance(part, str) for part in value):
        return list(value)
    raise ConfigError(f"{label} must be a string or a list of strings.")


def parse_config(data: dict[str, Any], *, base_dir: Path) -> JoinkitConfig:
    """Build a :class:`JoinkitConfig` from an already-decoded TOML mapping."""

    cp_section = _section(data, "control_plane")
    state_dir_value = cp_section.get("state_dir")
    state_dir = (
        _expand_path(str(state_dir_value), base=base_dir) if state_dir_value else DEFAULT_STATE_DIR
    )
    credential_value = cp_section.get("trust_credential")
    kubectl = _command(cp_section.get("kubectl"), label="control_plane.kubectl") or ["kubectl"]
    control_plane = ControlPlaneConfig(
        state_dir=state_dir,
        listen_host=str(cp_section.get("listen_host", DEFAULT_LISTEN_HOST)),
        listen_port=_integer(
            cp_section, "listen_port", DEFAULT_LISTEN_PORT, label="control_plane"
        ),
        endpoint=str(cp_section["endpoint"]) if cp_section.get("endpoint") else None,
        trust_credential=(
            _expand_path(str(credential_value), base=base_dir) if credential_value else None
        ),
        init_command=_command(cp_section.get("init_command"), label="control_plane.init_command"),
        network_manifest=(
            str(cp_section["network_manifest"]) if cp_section.get("network_manifest") else None
        ),
        kubectl=kubectl,
    )

    token_section = _section(data, "tokens")
    tokens = TokenConfig(
        ttl=_integer(token_section, "ttl", DEFAULT_TOKEN_TTL, label="tokens"),
        max_uses=_integer(token_section, "max_uses", DEFAULT_MAX_USES, label="tokens"),
    )

    enroll_section = _section(data, "enroll")
    enroll_dir_value = enroll_section.get("state_dir")
    enroll = EnrollConfig(
        state_dir=(
            _expand_path(str(enroll_dir_value), base=base_dir)
            if enroll_dir_value
            else state_dir / "node"
        ),
        attempts=_integer(enroll_section, "attempts", DEFAULT_ATTEMPTS, label="enroll"),
        base_delay=float(
            _number(enroll_section, "base_delay", DEFAULT_BASE_DELAY, label="enroll")
        ),
        max_delay=float(_number(enroll_section, "max_delay", DEFAULT_MAX_DELAY, label="enroll")),
        timeout=float(_number(enroll_section, "timeout", DEFAULT_TIMEOUT, label="enroll")),
    )

    health_section = _section(data, "health")
    probe = str(health_section.get("probe", "heartbeat"))
    if probe not in PROBES:
        raise ConfigError(f"health.probe must be one of {', '.join(PROBES)}; got {probe!r}.")
    health = HealthConfig(
        probe=probe,
        heartbeat_max_age=float(
            _number(
                health_section, "heartbeat_max_age", DEFAULT_HEARTBEAT_MAX_AGE, label="health"
            )
        ),
        tcp_port=_integer(health_section, "tcp_port", DEFAULT_TCP_PORT, label="health"),
        tcp_timeout=float(
            _number(health_section, "tcp_timeout", DEFAULT_TCP_TIMEOUT, label="health")
        ),
    )

    return JoinkitConfig(control_plane=control_plane, tokens=tokens, enroll=enroll, health=health)


def _apply_env(config: JoinkitConfig, env: Mapping[str, str]) -> JoinkitConfig:
    override = env.get(STATE_DIR_ENV, "").strip()
    if override:
        root = Path(override).expanduser()
        config.control_plane.state_dir = root
        config.enroll.state_dir = root / "node"
    return config


def resolve_config_path(explicit: str | os.PathLike[str] | None = None, *, env=None) -> Path | None:
    """Return the config file to read, or ``None`` to use built-in defaults."""

    env = os.environ if env is None else env
    if explicit:
        return Path(explicit).expanduser()
    from_env = env.get(CONFIG_ENV, "").strip()
    if from_env:
        return Path(from_env).expanduser()
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def load_config(path: str | os.PathLike[str] | None = None, *, env=None) -> JoinkitConfig:
    env = os.environ if env is None else env
    config_path = resolve_config_path(path, env=env)
    if config_path is None:
        return _apply_env(JoinkitConfig(), env)
    if not config_path.exists():
        raise ConfigError(f"Configuration not found: {config_path}")
    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc
    config = parse_config(data, base_dir=config_path.resolve().parent)
    config.source = config_path
    return _apply_env(config, env)


__all__ = [
    "ControlPlaneConfig",
    "EnrollConfig",
    "HealthConfig",
    "JoinkitConfig",
    "TokenConfig",
    "load_config",
    "parse_config",
    "resolve_config_path",
]
