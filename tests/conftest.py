"""Test fixtures and configuration helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]

# Ensure the project root is importable so ``joinkit`` and ``tests.helpers``
# resolve without an editable install.
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from joinkit.cluster.coordinator import BootstrapCoordinator  # noqa: E402
from joinkit.cluster.discovery import DiscoveryServer  # noqa: E402
from tests.helpers.cluster_fixtures import ENDPOINT, TRUST_CREDENTIAL, FakeClock  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_joinkit_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's joinkit environment out of the tests."""

    for name in ("JOINKIT_CONFIG", "JOINKIT_STATE_DIR", "JOINKIT_TOKEN"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator(clock: FakeClock) -> BootstrapCoordinator:
    """An in-memory coordinator whose control plane is already initialized."""

    coordinator = BootstrapCoordinator.in_memory(clock=clock)
    coordinator.control_plane.initialize(ENDPOINT, TRUST_CREDENTIAL)
    return coordinator


@pytest.fixture
def discovery_server(coordinator: BootstrapCoordinator) -> Iterator[DiscoveryServer]:
    """Serve ``coordinator`` on an ephemeral loopback port."""

    server = DiscoveryServer(("127.0.0.1", 0), coordinator)
    thread = server.start_background()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=1)
