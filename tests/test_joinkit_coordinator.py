"""Tests for server-side enrollment through the bootstrap coordinator."""

from __future__ import annotations

import threading

import pytest

from joinkit.cluster.coordinator import BootstrapCoordinator, EnrollmentRequest
from joinkit.cluster.registry import NodeStatus, heartbeat_probe
from joinkit.errors import (
    ConfigError,
    NodeIdentityConflictError,
    NotReadyError,
    TokenInvalidError,
)
from tests.helpers.cluster_fixtures import IDENTITY_KEY, FakeClock


def _request(token: str, node_id: str, key: str = IDENTITY_KEY) -> EnrollmentRequest:
    return EnrollmentRequest(token=token, node_id=node_id, identity_key=key)


def test_enroll_creates_pending_record_and_credential(
    coordinator: BootstrapCoordinator, clock: FakeClock
) -> None:
    token = coordinator.issuer.issue_token(600, 1)

    result = coordinator.enroll(_request(token.value, "worker-a"))

    assert result.already_enrolled is False
    assert result.node_credential
    assert result.node.status is NodeStatus.PENDING
    assert result.node.joined_at == clock.now
    assert coordinator.registry.get("worker-a") == result.node
    assert coordinator.issuer.get(token.token_id).uses_remaining == 0


def test_three_of_four_concurrent_enrollments_succeed(
    coordinator: BootstrapCoordinator,
) -> None:
    """A token with three uses admits exactly three racing workers."""

    token = coordinator.issuer.issue_token(600, 3)
    barrier = threading.Barrier(4)
    outcomes: dict[str, object] = {}

    def enroll(node_id: str) -> None:
        barrier.wait()
        try:
            outcomes[node_id] = coordinator.enroll(
                _request(token.value, node_id, key=node_id * 8)
            )
        except TokenInvalidError as exc:
            outcomes[node_id] = exc

    node_ids = [f"worker-{index}" for index in range(4)]
    threads = [threading.Thread(target=enroll, args=(node_id,)) for node_id in node_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    failures = [value for value in outcomes.values() if isinstance(value, TokenInvalidError)]
    assert len(failures) == 1
    assert len(coordinator.registry.list()) == 3
    assert coordinator.issuer.get(token.token_id).uses_remaining == 0


def test_repeat_enrollment_is_idempotent_and_keeps_second_token(
    coordinator: BootstrapCoordinator, clock: FakeClock
) -> None:
    first_token = coordinator.issuer.issue_token(600, 1)
    second_token = coordinator.issuer.issue_token(600, 1)

    first = coordinator.enroll(_request(first_token.value, "worker-a"))
    clock.advance(5)
    second = coordinator.enroll(_request(second_token.value, "worker-a"))

    assert second.already_enrolled is True
    assert second.node.joined_at == first.node.joined_at
    assert second.node.identity_fingerprint == first.node.identity_fingerprint
    assert second.node_credential
    assert second.node_credential != first.node_credential
    assert coordinator.issuer.get(second_token.token_id).uses_remaining == 1
    with pytest.raises(PermissionError):
        coordinator.heartbeat("worker-a", first.node_credential)
    assert coordinator.heartbeat("worker-a", second.node_credential) is not None


def test_repeat_enrollment_short_circuits_even_with_spent_token(
    coordinator: BootstrapCoordinator,
) -> None:
    token = coordinator.issuer.issue_token(600, 1)
    coordinator.enroll(_request(token.value, "worker-a"))

    again = coordinator.enroll(_request(token.value, "worker-a"))

    assert again.already_enrolled is True


def test_node_id_claimed_by_another_identity_conflicts(
    coordinator: BootstrapCoordinator,
) -> None:
    token = coordinator.issuer.issue_token(600, 2)
    coordinator.enroll(_request(token.value, "worker-a"))

    with pytest.raises(NodeIdentityConflictError):
        coordinator.enroll(_request(token.value, "worker-a", key="b" * 64))
    assert coordinator.issuer.get(token.token_id).uses_remaining == 1


def test_rejected_token_leaves_no_node_record(
    coordinator: BootstrapCoordinator, clock: FakeClock
) -> None:
    token = coordinator.issuer.issue_token(60, 1)
    clock.advance(61)

    with pytest.raises(TokenInvalidError, match="expired"):
        coordinator.enroll(_request(token.value, "worker-a"))
    assert coordinator.registry.list() == []


def test_enroll_requires_initialized_control_plane(clock: FakeClock) -> None:
    coordinator = BootstrapCoordinator.in_memory(clock=clock)

    with pytest.raises(NotReadyError):
        coordinator.enroll(_request("abcdef.0123456789abcdef", "worker-a"))


@pytest.mark.parametrize(
    ("node_id", "key"),
    [("Worker_A", IDENTITY_KEY), ("-worker", IDENTITY_KEY), ("worker-a", "short")],
)
def test_enroll_validates_request(
    coordinator: BootstrapCoordinator, node_id: str, key: str
) -> None:
    with pytest.raises(ConfigError):
        coordinator.enroll(_request("abcdef.0123456789abcdef", node_id, key=key))


def test_three_enrollments_stay_pending_until_health_check(
    coordinator: BootstrapCoordinator, clock: FakeClock
) -> None:
    token = coordinator.issuer.issue_token(600, 3)
    credentials = {}
    for index in range(3):
        node_id = f"worker-{index}"
        result = coordinator.enroll(_request(token.value, node_id, key=node_id * 8))
        credentials[node_id] = result.node_credential

    nodes = coordinator.registry.list()
    assert len(nodes) == 3
    assert {node.status for node in nodes} == {NodeStatus.PENDING}

    for node_id, credential in credentials.items():
        coordinator.heartbeat(node_id, credential)
    coordinator.registry.health_check(heartbeat_probe(60, clock=clock))

    assert {node.status for node in coordinator.registry.list()} == {NodeStatus.READY}


def test_from_state_dir_shares_state_between_instances(tmp_path, clock: FakeClock) -> None:
    """The CLI and the discovery server see the same tokens and nodes."""

    cli_side = BootstrapCoordinator.from_state_dir(tmp_path, clock=clock)
    cli_side.control_plane.initialize("http://10.0.0.10:9443", b"ca bytes")
    token = cli_side.issuer.issue_token(600, 1)

    server_side = BootstrapCoordinator.from_state_dir(tmp_path, clock=clock)
    server_side.enroll(_request(token.value, "worker-a"))

    assert [node.node_id for node in cli_side.registry.list()] == ["worker-a"]
    assert (tmp_path / "tokens" / f"{token.token_id}.json").exists()
    assert (tmp_path / "nodes" / "worker-a.json").exists()
