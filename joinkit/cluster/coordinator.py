"""Server-side enrollment: ties the issuer, the registry and node credentials."""

from __future__ import annotations

import re
import secrets
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ..errors import ConfigError, JoinkitError, NodeIdentityConflictError
from .control_plane import ControlPlane, DiscoveryInfo
from .registry import ClusterRegistry, NodeRecord, NodeRole, NodeStatus, fingerprint_secret
from .store import DirectoryStore, MemoryStore
from .tokens import CredentialIssuer, parse_token, redact_token

NODE_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]{0,61}[a-z0-9])?$")
MIN_IDENTITY_KEY_LENGTH = 32


def _log(message: str) -> None:
    print(f"[joinkit] {message}", file=sys.stderr, flush=True)


def validate_node_id(node_id: str) -> str:
    if not NODE_ID_PATTERN.match(node_id):
        raise ConfigError(
            f"node id {node_id!r} must be lowercase alphanumerics, '-' or '.' (max 63 chars)"
        )
    return node_id


@dataclass(frozen=True, slots=True)
class EnrollmentRequest:
    token: str
    node_id: str
    identity_key: str
    role: NodeRole = NodeRole.WORKER
    address: str | None = None

    def validate(self) -> "EnrollmentRequest":
        validate_node_id(self.node_id)
        if len(self.identity_key) < MIN_IDENTITY_KEY_LENGTH:
            raise ConfigError(
                f"identity key must be at least {MIN_IDENTITY_KEY_LENGTH} characters"
            )
        return self


@dataclass(frozen=True, slots=True)
class EnrollmentResult:
    """Outcome of an enrollment.

    ``already_enrolled`` marks the idempotent duplicate case, in which no token
    use is consumed. The node credential is re-issued in both cases.
    """

    node: NodeRecord
    already_enrolled: bool = False
    node_credential: str | None = None


class BootstrapCoordinator:
    """Everything the control plane needs to answer enrollment requests."""

    def __init__(
        self,
        control_plane: ControlPlane,
        issuer: CredentialIssuer,
        registry: ClusterRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.control_plane = control_plane
        self.issuer = issuer
        self.registry = registry
        self.clock = clock

    @classmethod
    def in_memory(cls, *, clock: Callable[[], float] = time.time) -> "BootstrapCoordinator":
        control_plane = ControlPlane(MemoryStore(), clock=clock)
        return cls(
            control_plane,
            CredentialIssuer(MemoryStore(), control_plane, clock=clock),
            ClusterRegistry(MemoryStore(), clock=clock),
            clock=clock,
        )

    @classmethod
    def from_state_dir(
        cls, state_dir: Path, *, clock: Callable[[], float] = time.time
    ) -> "BootstrapCoordinator":
        state_dir = Path(state_dir)
        control_plane = ControlPlane(DirectoryStore(state_dir), clock=clock)
        return cls(
            control_plane,
            CredentialIssuer(DirectoryStore(state_dir / "tokens"), control_plane, clock=clock),
            ClusterRegistry(DirectoryStore(state_dir / "nodes"), clock=clock),
            clock=clock,
        )

    def discovery(self) -> DiscoveryInfo:
        return self.control_plane.require_ready()

    def enroll(self, request: EnrollmentRequest) -> EnrollmentResult:
        """Register ``request.node_id`` exactly once.

        A node already registered under the same identity key gets its existing
        record and a replacement credential before the token is looked at.
        Otherwise the token is redeemed and the record written while the node's
        lock is held, so a failed redemption leaves nothing behind.
        """

        request.validate()
        self.control_plane.require_ready()
        # Reject garbage before taking any lock.
        parse_token(request.token)
        identity = fingerprint_secret(request.identity_key)
        issued: dict[str, str] = {}

        def create() -> NodeRecord:
            self.issuer.redeem(request.token)
            credential = secrets.token_urlsafe(32)
            issued["credential"] = credential
            return NodeRecord(
                node_id=request.node_id,
                role=request.role,
                joined_at=self.clock(),
                status=NodeStatus.PENDING,
                address=request.address,
                identity_fingerprint=identity,
                credential_fingerprint=fingerprint_secret(credential),
            )

        node, created = self.registry.register_once(request.node_id, create)
        if not created:
            # The caller may have lost the first response, so hand out a fresh
            # credential; the previous one stops working.
            credential = secrets.token_urlsafe(32)
            try:
                node = self.registry.reissue_credential(request.node_id, identity, credential)
            except PermissionError as exc:
                raise NodeIdentityConflictError(
                    f"node id {request.node_id} is already registered by another host"
                ) from exc
            if node is None:
                raise JoinkitError(f"node {request.node_id} was removed during enrollment")
            _log(
                f"{request.node_id} already enrolled; node credential re-issued, "
                f"token {redact_token(request.token)} left untouched"
            )
            return EnrollmentResult(node=node, already_enrolled=True, node_credential=credential)
        _log(
            f"enrolled {node.node_id} ({node.role.value}) "
            f"with token {redact_token(request.token)}"
        )
        return EnrollmentResult(node=node, node_credential=issued["credential"])

    def heartbeat(self, node_id: str, credential: str) -> NodeRecord | None:
        return self.registry.touch_heartbeat(node_id, credential)


__all__ = [
    "BootstrapCoordinator",
    "EnrollmentRequest",
    "EnrollmentResult",
    "validate_node_id",
]
