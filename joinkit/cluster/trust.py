"""Trust anchor fingerprints for authenticating the discovery endpoint."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass

from ..errors import TrustAnchorMismatchError

FINGERPRINT_PREFIX = "sha256:"
_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def compute_fingerprint(credential: bytes) -> str:
    """Return the ``sha256:<hex>`` fingerprint of a signing credential."""

    return FINGERPRINT_PREFIX + hashlib.sha256(credential).hexdigest()


def normalize_fingerprint(value: str) -> str:
    """Canonicalize user input, accepting upper-case hex and a missing prefix."""

    text = value.strip().lower()
    if text.startswith(FINGERPRINT_PREFIX):
        text = text[len(FINGERPRINT_PREFIX) :]
    if not _HEX_DIGEST.match(text):
        raise ValueError(f"not a sha256 fingerprint: {value!r}")
    return FINGERPRINT_PREFIX + text


@dataclass(frozen=True, slots=True)
class TrustAnchor:
    """Fingerprint pinned by a joining node before it trusts the control plane."""

    fingerprint: str

    @classmethod
    def from_credential(cls, credential: bytes) -> "TrustAnchor":
        return cls(compute_fingerprint(credential))

    @classmethod
    def parse(cls, value: str) -> "TrustAnchor":
        return cls(normalize_fingerprint(value))

    def matches(self, credential: bytes) -> bool:
        return hmac.compare_digest(self.fingerprint, compute_fingerprint(credential))

    def verify(self, credential: bytes, *, endpoint: str | None = None) -> None:
        if self.matches(credential):
            return
        where = f" at {endpoint}" if endpoint else ""
        raise TrustAnchorMismatchError(
            f"control plane{where} presented credential {compute_fingerprint(credential)}, "
            f"expected {self.fingerprint}; refusing to join"
        )


__all__ = [
    "FINGERPRINT_PREFIX",
    "TrustAnchor",
    "compute_fingerprint",
    "normalize_fingerprint",
]
