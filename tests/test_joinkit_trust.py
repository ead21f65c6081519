"""Tests for trust anchors and control-plane initialization state."""

from __future__ import annotations

import hashlib

import pytest

from joinkit.cluster.control_plane import ControlPlane
from joinkit.cluster.store import DirectoryStore, MemoryStore
from joinkit.cluster.trust import TrustAnchor, compute_fingerprint, normalize_fingerprint
from joinkit.errors import ConfigError, JoinkitError, NotReadyError, TrustAnchorMismatchError
from tests.helpers.cluster_fixtures import ENDPOINT, TRUST_CREDENTIAL, FakeClock


def test_compute_fingerprint_matches_sha256_hex() -> None:
    expected = "sha256:" + hashlib.sha256(TRUST_CREDENTIAL).hexdigest()

    assert compute_fingerprint(TRUST_CREDENTIAL) == expected


def test_normalize_fingerprint_accepts_operator_variants() -> None:
    digest = hashlib.sha256(b"ca").hexdigest()

    assert normalize_fingerprint(digest.upper()) == f"sha256:{digest}"
    assert normalize_fingerprint(f"  SHA256:{digest}\n") == f"sha256:{digest}"
    with pytest.raises(ValueError):
        normalize_fingerprint("sha256:1234")


def test_trust_anchor_verify_rejects_other_credentials() -> None:
    anchor = TrustAnchor.from_credential(TRUST_CREDENTIAL)

    anchor.verify(TRUST_CREDENTIAL)
    with pytest.raises(TrustAnchorMismatchError, match="refusing to join"):
        anchor.verify(b"rogue control plane", endpoint=ENDPOINT)


def test_control_plane_not_ready_until_initialized(clock: FakeClock) -> None:
    control_plane = ControlPlane(MemoryStore(), clock=clock)

    assert control_plane.initialized is False
    with pytest.raises(NotReadyError):
        control_plane.require_ready()

    info = control_plane.initialize(ENDPOINT + "/", TRUST_CREDENTIAL)

    assert info.endpoint == ENDPOINT
    assert info.initialized_at == clock.now
    assert control_plane.require_ready().trust_anchor == TrustAnchor.from_credential(
        TRUST_CREDENTIAL
    )


def test_trust_anchor_is_immutable_once_initialized(tmp_path, clock: FakeClock) -> None:
    control_plane = ControlPlane(DirectoryStore(tmp_path), clock=clock)
    first = control_plane.initialize(ENDPOINT, TRUST_CREDENTIAL)
    clock.advance(10)

    again = control_plane.initialize(ENDPOINT, TRUST_CREDENTIAL)
    moved = control_plane.initialize("https://10.0.0.10:9443", TRUST_CREDENTIAL)

    assert again == first
    assert moved.endpoint == "https://10.0.0.10:9443"
    assert moved.initialized_at == first.initialized_at
    with pytest.raises(JoinkitError, match="cannot change"):
        control_plane.initialize(ENDPOINT, b"another ca")
    reloaded = ControlPlane(DirectoryStore(tmp_path)).info()
    assert reloaded is not None
    assert reloaded.trust_credential == TRUST_CREDENTIAL


@pytest.mark.parametrize("endpoint", ["control.local:9443", "ftp://control.local", "http://"])
def test_initialize_rejects_bad_endpoints(endpoint: str) -> None:
    with pytest.raises(ConfigError):
        ControlPlane(MemoryStore()).initialize(endpoint, TRUST_CREDENTIAL)
