"""Authoritative record of enrolled nodes and their health."""

from __future__ import annotations

import hashlib
import hmac
import socket
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable

from ..errors import JoinkitError


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class NodeStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    UNREACHABLE = "unreachable"


def fingerprint_secret(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """One enrolled node. Replaced as a whole on every update."""

    node_id: str
    role: NodeRole
    joined_at: float
    status: NodeStatus = NodeStatus.PENDING
    address: str | None = None
    last_heartbeat: float | None = None
    last_checked: float | None = None
    identity_fingerprint: str | None = None
    credential_fingerprint: str | None = None

    def next_status(self, healthy: bool) -> NodeStatus:
        """Apply one health observation to the status state machine.

        ``pending`` only ever moves to ``ready``; once a node has been ready it
        flips between ``ready`` and ``unreachable`` and never returns to
        ``pending``.
        """

        if healthy:
            return NodeStatus.READY
        if self.status is NodeStatus.PENDING:
            return NodeStatus.PENDING
        return NodeStatus.UNREACHABLE

    def public_dict(self) -> dict[str, object]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "joined_at": self.joined_at,
            "status": self.status.value,
            "address": self.address,
            "last_heartbeat": self.last_heartbeat,
            "last_checked": self.last_checked,
        }

    def to_dict(self) -> dict[str, object]:
        data = self.public_dict()
        data["identity_fingerprint"] = self.identity_fingerprint
        data["credential_fingerprint"] = self.credential_fingerprint
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "NodeRecord":
        def _optional_float(key: str) -> float | None:
            value = data.get(key)
            return float(value) if value is not None else None  # type: ignore[arg-type]

        def _optional_str(key: str) -> str | None:
            value = data.get(key)
            return str(value) if value else None

        return cls(
            node_id=str(data["node_id"]),
            role=NodeRole(str(data["role"])),
            joined_at=float(data["joined_at"]),  # type: ignore[arg-type]
            status=NodeStatus(str(data.get("status", NodeStatus.PENDING.value))),
            address=_optional_str("address"),
            last_heartbeat=_optional_float("last_heartbeat"),
            last_checked=_optional_float("last_checked"),
            identity_fingerprint=_optional_str("identity_fingerprint"),
            credential_fingerprint=_optional_str("credential_fingerprint"),
        )


@dataclass(frozen=True, slots=True)
class HealthTransition:
    node_id: str
    previous: NodeStatus
    current: NodeStatus

    @property
    def changed(self) -> bool:
        return self.previous is not self.current


Probe = Callable[[NodeRecord], bool]


def heartbeat_probe(max_age: float, *, clock: Callable[[], float] = time.time) -> Probe:
    """Healthy when the node sent a heartbeat within ``max_age`` seconds."""

    def probe(record: NodeRecord) -> bool:
        if record.last_heartbeat is None:
            return False
        return clock() - record.last_heartbeat <= max_age

    return probe


def tcp_probe(port: int, *, timeout: float = 3.0) -> Probe:
    """Healthy when ``address:port`` accepts a TCP connection."""

    def probe(record: NodeRecord) -> bool:
        if not record.address:
            return False
        try:
            sock = socket.create_connection((record.address, port), timeout=timeout)
        except OSError:
            return False
        sock.close()
        return True

    return probe


class ClusterRegistry:
    """Node records keyed by node id.

    Writes for one node id are serialized through the store's per-key lock;
    writes for different node ids never wait on each other.
    """

    def __init__(self, store, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def record(self, node: NodeRecord) -> NodeRecord:
        """Upsert ``node``, replacing any existing record for its id.

        A ``pending`` record cannot replace one that has already been checked
        into ``ready`` or ``unreachable``.
        """

        with self.store.lock(node.node_id):
            existing = self.get(node.node_id)
            if (
                existing is not None
                and existing.status is not NodeStatus.PENDING
                and node.status is NodeStatus.PENDING
            ):
                raise ValueError(
                    f"node {node.node_id} is {existing.status.value}; "
                    "it cannot be moved back to pending"
                )
            self.store.write(node.node_id, node.to_dict())
        return node

    def get(self, node_id: str) -> NodeRecord | None:
        data = self.store.read(node_id)
        return NodeRecord.from_dict(data) if data is not None else None

    def list(self) -> list[NodeRecord]:
        records = [record for record in map(self.get, self.store.keys()) if record is not None]
        return sorted(records, key=lambda record: (record.joined_at, record.node_id))

    def remove(self, node_id: str) -> bool:
        with self.store.lock(node_id):
            return self.store.delete(node_id)

    def register_once(
        self, node_id: str, create: Callable[[], NodeRecord]
    ) -> tuple[NodeRecord, bool]:
        """Return ``(existing, False)`` or persist ``create()`` and return it.

        ``create`` runs under the node's lock; if it raises nothing is written.
        """

        with self.store.lock(node_id):
            existing = self.get(node_id)
            if existing is not None:
                return existing, False
            node = create()
            if node.node_id != node_id:
                raise JoinkitError(f"record for {node.node_id} created under key {node_id}")
            self.store.write(node_id, node.to_dict())
            return node, True

    def reissue_credential(
        self, node_id: str, identity_fingerprint: str, credential: str
    ) -> NodeRecord | None:
        """Replace the node credential of an existing record.

        ``identity_fingerprint`` must match the stored one, otherwise
        :class:`PermissionError` is raised. Returns ``None`` for unknown nodes.
        """

        with self.store.lock(node_id):
            record = self.get(node_id)
            if record is None:
                return None
            if not hmac.compare_digest(record.identity_fingerprint or "", identity_fingerprint):
                raise PermissionError(f"identity does not match node {node_id}")
            updated = replace(record, credential_fingerprint=fingerprint_secret(credential))
            self.store.write(node_id, updated.to_dict())
            return updated

    def touch_heartbeat(self, node_id: str, credential: str) -> NodeRecord | None:
        """Record a heartbeat; ``None`` when the node is unknown.

        Raises :class:`PermissionError` when the credential does not match.
        """

        with self.store.lock(node_id):
            record = self.get(node_id)
            if record is None:
                return None
            expected = record.credential_fingerprint or ""
            if not hmac.compare_digest(expected, fingerprint_secret(credential)):
                raise PermissionError(f"invalid credential for node {node_id}")
            updated = replace(record, last_heartbeat=self.clock())
            self.store.write(node_id, updated.to_dict())
            return updated

    def health_check(
        self, probe: Probe, *, node_ids: Iterable[str] | None = None
    ) -> list[HealthTransition]:
        """Probe every node and apply the result to its status.

        Probes run without holding any lock; the outcome is applied to the
        record as re-read under the lock. Unreachable nodes are kept.
        """

        targets = self.list()
        if node_ids is not None:
            wanted = set(node_ids)
            targets = [record for record in targets if record.node_id in wanted]

        transitions: list[HealthTransition] = []
        for snapshot in targets:
            healthy = bool(probe(snapshot))
            with self.store.lock(snapshot.node_id):
                current = self.get(snapshot.node_id)
                if current is None:
                    continue
                status = current.next_status(healthy)
                updated = replace(current, status=status, last_checked=self.clock())
                self.store.write(current.node_id, updated.to_dict())
            transitions.append(HealthTransition(current.node_id, current.status, status))
        return transitions


__all__ = [
    "ClusterRegistry",
    "HealthTransition",
    "NodeRecord",
    "NodeRole",
    "NodeStatus",
    "Probe",
    "fingerprint_secret",
    "heartbeat_probe",
    "tcp_probe",
]
