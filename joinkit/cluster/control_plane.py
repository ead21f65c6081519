"""Control-plane initialization state: discovery endpoint and trust anchor."""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlparse

from ..errors import ConfigError, JoinkitError, NotReadyError
from .trust import TrustAnchor

STATE_KEY = "control-plane"


@dataclass(frozen=True, slots=True)
class DiscoveryInfo:
    """What a joining node learns from the discovery endpoint."""

    endpoint: str
    trust_credential: bytes
    initialized_at: float

    @property
    def trust_anchor(self) -> TrustAnchor:
        return TrustAnchor.from_credential(self.trust_credential)

    def to_dict(self) -> dict[str, object]:
        return {
            "endpoint": self.endpoint,
            "trust_credential": base64.b64encode(self.trust_credential).decode("ascii"),
            "initialized_at": self.initialized_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "DiscoveryInfo":
        return cls(
            endpoint=str(data["endpoint"]),
            trust_credential=base64.b64decode(str(data["trust_credential"])),
            initialized_at=float(data["initialized_at"]),  # type: ignore[arg-type]
        )


def validate_endpoint(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ConfigError(f"discovery endpoint must be an http(s) URL, got {endpoint!r}")
    return endpoint.rstrip("/")


class ControlPlane:
    """Records that the external control-plane init completed.

    The trust anchor is immutable once recorded: re-initializing with the same
    credential is a no-op, a different credential is refused.
    """

    def __init__(self, store, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def initialize(self, endpoint: str, trust_credential: bytes) -> DiscoveryInfo:
        endpoint = validate_endpoint(endpoint)
        if not trust_credential:
            raise ConfigError("trust credential is empty")
        with self.store.lock(STATE_KEY):
            existing = self.store.read(STATE_KEY)
            if existing is not None:
                current = DiscoveryInfo.from_dict(existing)
                if current.trust_credential != trust_credential:
                    raise JoinkitError(
                        "control plane already initialized with trust anchor "
                        f"{current.trust_anchor.fingerprint}; the anchor cannot change"
                    )
                if current.endpoint == endpoint:
                    return current
                info = DiscoveryInfo(endpoint, trust_credential, current.initialized_at)
            else:
                info = DiscoveryInfo(endpoint, trust_credential, self.clock())
            self.store.write(STATE_KEY, info.to_dict())
            return info

    def info(self) -> DiscoveryInfo | None:
        data = self.store.read(STATE_KEY)
        return DiscoveryInfo.from_dict(data) if data is not None else None

    def require_ready(self) -> DiscoveryInfo:
        info = self.info()
        if info is None:
            raise NotReadyError(
                "control plane initialization has not completed; run `joinkit init` first"
            )
        return info

    @property
    def initialized(self) -> bool:
        return self.info() is not None


__all__ = ["ControlPlane", "DiscoveryInfo", "validate_endpoint"]
