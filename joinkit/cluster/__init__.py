"""Join-credential lifecycle for bootstrapping small clusters."""

from .control_plane import ControlPlane, DiscoveryInfo
from .coordinator import BootstrapCoordinator, EnrollmentRequest, EnrollmentResult
from .discovery import DiscoveryServer, serve
from .enrollment import EnrollmentClient, NodeCredential, NodeIdentity, RetryPolicy
from .registry import (
    ClusterRegistry,
    HealthTransition,
    NodeRecord,
    NodeRole,
    NodeStatus,
    heartbeat_probe,
    tcp_probe,
)
from .store import DirectoryStore, MemoryStore
from .tokens import CredentialIssuer, Token, parse_token, redact_token
from .trust import TrustAnchor, compute_fingerprint

__all__ = [
    "BootstrapCoordinator",
    "ClusterRegistry",
    "ControlPlane",
    "CredentialIssuer",
    "DirectoryStore",
    "DiscoveryInfo",
    "DiscoveryServer",
    "EnrollmentClient",
    "EnrollmentRequest",
    "EnrollmentResult",
    "HealthTransition",
    "MemoryStore",
    "NodeCredential",
    "NodeIdentity",
    "NodeRecord",
    "NodeRole",
    "NodeStatus",
    "RetryPolicy",
    "Token",
    "TrustAnchor",
    "compute_fingerprint",
    "heartbeat_probe",
    "parse_token",
    "redact_token",
    "serve",
    "tcp_probe",
]
