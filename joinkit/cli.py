"""Entry points for the joinkit CLI."""

from __future__ import annotations

import argparse
import json
import os
import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from . import runner
from .cluster import provision
from .cluster.coordinator import BootstrapCoordinator
from .cluster.discovery import serve
from .cluster.enrollment import EnrollmentClient, RetryPolicy
from .cluster.registry import NodeRole, Probe, heartbeat_probe, tcp_probe
from .config import JoinkitConfig, load_config
from .errors import ConfigError, JoinkitError

TOKEN_ENV = "JOINKIT_TOKEN"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="joinkit",
        description="Issue join tokens, enroll worker nodes and track cluster membership.",
    )
    parser.add_argument(
        "--config",
        help="Path to joinkit.toml (defaults to $JOINKIT_CONFIG or /etc/joinkit/joinkit.toml).",
    )
    parser.set_defaults(handler=None)

    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser(
        "init",
        help="Run the external control-plane init and record the discovery endpoint.",
    )
    init_parser.add_argument("--endpoint", help="Discovery URL workers will contact.")
    init_parser.add_argument(
        "--trust-credential",
        help="Path to the control plane's signing credential (for example its CA cert).",
    )
    init_parser.add_argument(
        "--init-command",
        help="External command that initializes the control plane (quoted string).",
    )
    init_parser.add_argument(
        "--network-manifest",
        help="Pod-network manifest applied once the control plane reports ready.",
    )
    init_parser.add_argument(
        "--skip-provision",
        action="store_true",
        help="Only record the endpoint; do not run the init or network-apply commands.",
    )
    init_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the external commands without executing them or recording state.",
    )
    init_parser.set_defaults(handler=_handle_init)

    serve_parser = subparsers.add_parser("serve", help="Serve the discovery endpoint.")
    serve_parser.add_argument("--host", help="Address to bind (defaults to config).")
    serve_parser.add_argument("--port", type=int, help="Port to bind (defaults to config).")
    serve_parser.set_defaults(handler=_handle_serve)

    issue_parser = subparsers.add_parser(
        "issue-token", help="Create a time- and use-limited join token."
    )
    issue_parser.add_argument("--ttl", type=int, help="Lifetime in seconds.")
    issue_parser.add_argument("--max-uses", type=int, help="Number of nodes the token admits.")
    issue_parser.add_argument("--description", help="Free-form note shown by `tokens`.")
    issue_parser.add_argument(
        "--json", action="store_true", help="Emit the token details as JSON."
    )
    issue_parser.set_defaults(handler=_handle_issue_token)

    revoke_parser = subparsers.add_parser("revoke-token", help="Invalidate a token immediately.")
    revoke_parser.add_argument("token_id", help="Token id (the part before the dot).")
    revoke_parser.set_defaults(handler=_handle_revoke_token)

    tokens_parser = subparsers.add_parser("tokens", help="List issued tokens without secrets.")
    tokens_parser.add_argument(
        "--prune",
        action="store_true",
        help="Delete expired and exhausted tokens before listing.",
    )
    tokens_parser.set_defaults(handler=_handle_tokens)

    enroll_parser = subparsers.add_parser("enroll", help="Enroll this host with a control plane.")
    enroll_parser.add_argument("--endpoint", required=True, help="Discovery URL.")
    enroll_parser.add_argument(
        "--fingerprint", required=True, help="Expected trust anchor (sha256:<hex>)."
    )
    enroll_parser.add_argument(
        "--token",
        help=f"Join token. Prefer --token-file or ${TOKEN_ENV} to keep it out of `ps`.",
    )
    enroll_parser.add_argument("--token-file", help="File containing the join token.")
    enroll_parser.add_argument(
        "--role",
        choices=[role.value for role in NodeRole],
        default=NodeRole.WORKER.value,
        help="Role to register. Defaults to worker.",
    )
    enroll_parser.add_argument("--node-id", help="Node id to use on first enrollment.")
    enroll_parser.add_argument("--address", help="Address the control plane can probe.")
    enroll_parser.add_argument("--state-dir", help="Where identity and credential are kept.")
    enroll_parser.set_defaults(handler=_handle_enroll)

    heartbeat_parser = subparsers.add_parser(
        "heartbeat", help="Report liveness using the stored node credential."
    )
    heartbeat_parser.add_argument("--state-dir", help="Where identity and credential are kept.")
    heartbeat_parser.set_defaults(handler=_handle_heartbeat)

    status_parser = subparsers.add_parser("status", help="List enrolled nodes.")
    status_parser.add_argument(
        "--check", action="store_true", help="Run a health check before listing."
    )
    status_parser.add_argument("--json", action="store_true", help="Emit JSON.")
    status_parser.set_defaults(handler=_handle_status)

    health_parser = subparsers.add_parser("health-check", help="Probe nodes and update status.")
    health_parser.set_defaults(handler=_handle_health_check)

    remove_parser = subparsers.add_parser("remove-node", help="Remove a node record.")
    remove_parser.add_argument("node_id")
    remove_parser.set_defaults(handler=_handle_remove_node)

    return parser


def _coordinator(config: JoinkitConfig) -> BootstrapCoordinator:
    return BootstrapCoordinator.from_state_dir(config.control_plane.state_dir)


def _format_time(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _probe(config: JoinkitConfig) -> Probe:
    if config.health.probe == "tcp":
        return tcp_probe(config.health.tcp_port, timeout=config.health.tcp_timeout)
    return heartbeat_probe(config.health.heartbeat_max_age)


def _handle_init(args: argparse.Namespace, config: JoinkitConfig) -> int:
    cp_config = config.control_plane
    if args.init_command:
        try:
            cp_config.init_command = shlex.split(args.init_command)
        except ValueError as exc:
            raise ConfigError(f"--init-command is not a valid command line: {exc}") from exc
    if args.network_manifest:
        cp_config.network_manifest = args.network_manifest
    endpoint = args.endpoint or cp_config.endpoint
    credential_path = (
        Path(args.trust_credential).expanduser()
        if args.trust_credential
        else cp_config.trust_credential
    )
    if not endpoint:
        raise ConfigError("--endpoint (or control_plane.endpoint) is required")
    if credential_path is None:
        raise ConfigError("--trust-credential (or control_plane.trust_credential) is required")

    if not args.skip_provision:
        provision.provision_control_plane(cp_config, dry_run=args.dry_run)
    if args.dry_run:
        print(f"Would record {endpoint} with trust credential {credential_path}")
        return 0

    info = _coordinator(config).control_plane.initialize(
        endpoint, provision.read_trust_credential(credential_path)
    )
    print(f"Control plane initialized at {info.endpoint}")
    print(f"Trust anchor: {info.trust_anchor.fingerprint}")
    return 0


def _handle_serve(args: argparse.Namespace, config: JoinkitConfig) -> int:
    host = args.host or config.control_plane.listen_host
    port = args.port if args.port is not None else config.control_plane.listen_port
    serve(_coordinator(config), host, port)
    return 0


def _handle_issue_token(args: argparse.Namespace, config: JoinkitConfig) -> int:
    ttl = args.ttl if args.ttl is not None else config.tokens.ttl
    max_uses = args.max_uses if args.max_uses is not None else config.tokens.max_uses
    coordinator = _coordinator(config)
    token = coordinator.issuer.issue_token(ttl, max_uses, description=args.description)
    info = coordinator.discovery()
    fingerprint = info.trust_anchor.fingerprint
    if args.json:
        payload = {
            "token": token.value,
            "token_id": token.token_id,
            "expires_at": _format_time(token.expiry),
            "max_uses": token.max_uses,
            "endpoint": info.endpoint,
            "fingerprint": fingerprint,
        }
        print(json.dumps(payload, indent=2))
        return 0
    print(f"Token:       {token.value}")
    print(f"Expires:     {_format_time(token.expiry)}")
    print(f"Max uses:    {token.max_uses}")
    print(f"Endpoint:    {info.endpoint}")
    print(f"Fingerprint: {fingerprint}")
    print("")
    print("This token is shown once. Enroll workers with:")
    print(f"  export {TOKEN_ENV}=<token>")
    print(f"  joinkit enroll --endpoint {info.endpoint} --fingerprint {fingerprint}")
    return 0


def _handle_revoke_token(args: argparse.Namespace, config: JoinkitConfig) -> int:
    token = _coordinator(config).issuer.revoke_token(args.token_id)
    print(f"Revoked token {token.token_id}")
    return 0


def _handle_tokens(args: argparse.Namespace, config: JoinkitConfig) -> int:
    issuer = _coordinator(config).issuer
    if args.prune:
        for token_id in issuer.prune_tokens():
            print(f"Pruned {token_id}", file=sys.stderr)
    now = issuer.clock()
    tokens = issuer.list_tokens()
    if not tokens:
        print("No tokens.")
        return 0
    print(f"{'ID':<8} {'USES':<7} {'EXPIRES':<21} {'STATE':<9} DESCRIPTION")
    for token in tokens:
        if token.expired(now):
            state = "expired"
        elif token.exhausted:
            state = "spent"
        else:
            state = "valid"
        uses = f"{token.uses_remaining}/{token.max_uses}"
        print(
            f"{token.token_id:<8} {uses:<7} {_format_time(token.expiry):<21} "
            f"{state:<9} {token.description or ''}".rstrip()
        )
    return 0


def _read_token(args: argparse.Namespace) -> str:
    if args.token:
        return args.token.strip()
    if args.token_file:
        try:
            return Path(args.token_file).expanduser().read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise ConfigError(f"Token file not found: {args.token_file}") from exc
    from_env = os.environ.get(TOKEN_ENV, "").strip()
    if from_env:
        return from_env
    raise ConfigError(f"a join token is required (--token, --token-file or ${TOKEN_ENV})")


def _enroll_client(args: argparse.Namespace, config: JoinkitConfig) -> EnrollmentClient:
    state_dir = Path(args.state_dir).expanduser() if args.state_dir else config.enroll.state_dir
    retry = RetryPolicy(
        attempts=config.enroll.attempts,
        base_delay=config.enroll.base_delay,
        max_delay=config.enroll.max_delay,
    )
    return EnrollmentClient(state_dir, retry=retry, timeout=config.enroll.timeout)


def _handle_enroll(args: argparse.Namespace, config: JoinkitConfig) -> int:
    token = _read_token(args)
    client = _enroll_client(args, config)
    result = client.enroll(
        args.endpoint,
        args.fingerprint,
        token,
        role=NodeRole(args.role),
        node_id=args.node_id,
        address=args.address,
    )
    node = result.node
    if result.already_enrolled:
        print(f"{node.node_id} is already enrolled (status {node.status.value}).")
    else:
        print(f"Enrolled {node.node_id} as {node.role.value} (status {node.status.value}).")
    return 0


def _handle_heartbeat(args: argparse.Namespace, config: JoinkitConfig) -> int:
    _enroll_client(args, config).heartbeat()
    return 0


def _print_transitions(transitions) -> None:
    for transition in transitions:
        if transition.changed:
            print(
                f"{transition.node_id}: {transition.previous.value} -> {transition.current.value}",
                file=sys.stderr,
            )


def _handle_status(args: argparse.Namespace, config: JoinkitConfig) -> int:
    registry = _coordinator(config).registry
    if args.check:
        _print_transitions(registry.health_check(_probe(config)))
    nodes = registry.list()
    if args.json:
        print(json.dumps([node.public_dict() for node in nodes], indent=2))
        return 0
    if not nodes:
        print("No nodes enrolled.")
        return 0
    print(f"{'NODE':<32} {'ROLE':<14} {'STATUS':<12} {'JOINED':<21} ADDRESS")
    for node in nodes:
        print(
            f"{node.node_id:<32} {node.role.value:<14} {node.status.value:<12} "
            f"{_format_time(node.joined_at):<21} {node.address or '-'}"
        )
    return 0


def _handle_health_check(args: argparse.Namespace, config: JoinkitConfig) -> int:
    transitions = _coordinator(config).registry.health_check(_probe(config))
    _print_transitions(transitions)
    counts: dict[str, int] = {}
    for transition in transitions:
        counts[transition.current.value] = counts.get(transition.current.value, 0) + 1
    summary = ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
    print(f"Checked {len(transitions)} node(s){': ' + summary if summary else ''}")
    return 0


def _handle_remove_node(args: argparse.Namespace, config: JoinkitConfig) -> int:
    if not _coordinator(config).registry.remove(args.node_id):
        print(f"No node named {args.node_id}.", file=sys.stderr)
        return 1
    print(f"Removed {args.node_id}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
        return handler(args, config)
    except (JoinkitError, runner.CommandError) as exc:
        print(f"ERROR[{exc.kind}]: {exc}", file=sys.stderr)
        return exc.exit_code
    except ValueError as exc:
        print(f"ERROR[{ConfigError.kind}]: {exc}", file=sys.stderr)
        return ConfigError.exit_code
