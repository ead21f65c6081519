"""Join tokens and the control-plane CredentialIssuer.

Tokens use the ``<id>.<secret>`` bootstrap-token form. The id is public and
names the token for listing and revocation; only a SHA-256 digest of the
secret is stored, so an issued secret cannot be recovered later.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from ..errors import ConfigError, TokenInvalidError
from .control_plane import ControlPlane

TOKEN_PATTERN = re.compile(r"^([a-z0-9]{6})\.([a-z0-9]{16})$")
_ALPHABET = string.ascii_lowercase + string.digits
_ID_LENGTH = 6
_SECRET_LENGTH = 16


def _random_string(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _digest(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def parse_token(value: str) -> tuple[str, str]:
    """Split ``<id>.<secret>``; raise :class:`TokenInvalidError` when malformed."""

    match = TOKEN_PATTERN.match(value.strip())
    if not match:
        raise TokenInvalidError("malformed token; expected <6 chars>.<16 chars>")
    return match.group(1), match.group(2)


def redact_token(value: str) -> str:
    """Render a token for logs: keep the public id, hide the secret."""

    token_id, _, _ = value.strip().partition(".")
    if len(token_id) == _ID_LENGTH:
        return f"{token_id}.****************"
    return "***"


@dataclass(frozen=True, slots=True)
class Token:
    """A join credential as seen by the issuer.

    ``secret`` is only populated on the value returned by
    :meth:`CredentialIssuer.issue_token`; stored tokens keep ``secret_hash``.
    """

    token_id: str
    expiry: float
    uses_remaining: int
    max_uses: int
    created_at: float
    secret_hash: str = field(repr=False)
    description: str | None = None
    secret: str | None = field(default=None, repr=False, compare=False)

    @property
    def value(self) -> str:
        if self.secret is None:
            raise ValueError(f"secret for token {self.token_id} is not retrievable")
        return f"{self.token_id}.{self.secret}"

    def expired(self, now: float) -> bool:
        return now >= self.expiry

    @property
    def exhausted(self) -> bool:
        return self.uses_remaining <= 0

    def usable(self, now: float) -> bool:
        return not self.expired(now) and not self.exhausted

    def to_dict(self) -> dict[str, object]:
        return {
            "token_id": self.token_id,
            "secret_hash": self.secret_hash,
            "expiry": self.expiry,
            "uses_remaining": self.uses_remaining,
            "max_uses": self.max_uses,
            "created_at": self.created_at,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Token":
        description = data.get("description")
        return cls(
            token_id=str(data["token_id"]),
            secret_hash=str(data["secret_hash"]),
            expiry=float(data["expiry"]),  # type: ignore[arg-type]
            uses_remaining=int(data["uses_remaining"]),  # type: ignore[call-overload]
            max_uses=int(data["max_uses"]),  # type: ignore[call-overload]
            created_at=float(data["created_at"]),  # type: ignore[arg-type]
            description=str(description) if description else None,
        )


class CredentialIssuer:
    """Issue, redeem and revoke join tokens.

    Each token lives under its own store key, and redemption is a
    compare-and-decrement performed while holding that key's lock, so two
    workers racing for the last use get exactly one success.
    """

    def __init__(
        self,
        store,
        control_plane: ControlPlane,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.control_plane = control_plane
        self.clock = clock

    def issue_token(
        self, ttl: float, max_uses: int, *, description: str | None = None
    ) -> Token:
        if ttl <= 0:
            raise ConfigError(f"ttl must be greater than zero, got {ttl}")
        if max_uses < 1:
            raise ConfigError(f"max uses must be at least 1, got {max_uses}")
        self.control_plane.require_ready()

        while True:
            token_id = _random_string(_ID_LENGTH)
            with self.store.lock(token_id):
                if self.store.read(token_id) is not None:
                    continue
                secret = _random_string(_SECRET_LENGTH)
                now = self.clock()
                token = Token(
                    token_id=token_id,
                    secret_hash=_digest(secret),
                    expiry=now + ttl,
                    uses_remaining=max_uses,
                    max_uses=max_uses,
                    created_at=now,
                    description=description,
                )
                self.store.write(token_id, token.to_dict())
            return replace(token, secret=secret)

    def redeem(self, value: str) -> Token:
        """Consume one use of ``value`` and return the token's new state."""

        token_id, secret = parse_token(value)
        with self.store.lock(token_id):
            data = self.store.read(token_id)
            if data is None:
                raise TokenInvalidError("unknown token", token_id=token_id)
            token = Token.from_dict(data)
            if not hmac.compare_digest(token.secret_hash, _digest(secret)):
                raise TokenInvalidError("secret does not match", token_id=token_id)
            if token.expired(self.clock()):
                raise TokenInvalidError("expired", token_id=token_id)
            if token.exhausted:
                raise TokenInvalidError("no uses remaining", token_id=token_id)
            redeemed = replace(token, uses_remaining=token.uses_remaining - 1)
            self.store.write(token_id, redeemed.to_dict())
        return redeemed

    def revoke_token(self, token_id: str) -> Token:
        token_id = token_id.strip().partition(".")[0]
        if not re.fullmatch(r"[a-z0-9]{6}", token_id):
            raise TokenInvalidError("malformed token id")
        with self.store.lock(token_id):
            data = self.store.read(token_id)
            if data is None:
                raise TokenInvalidError("unknown token", token_id=token_id)
            revoked = replace(Token.from_dict(data), uses_remaining=0)
            self.store.write(token_id, revoked.to_dict())
        return revoked

    def get(self, token_id: str) -> Token | None:
        data = self.store.read(token_id)
        return Token.from_dict(data) if data is not None else None

    def list_tokens(self) -> list[Token]:
        tokens = [token for token in map(self.get, self.store.keys()) if token is not None]
        return sorted(tokens, key=lambda token: (token.created_at, token.token_id))

    def prune_tokens(self) -> list[str]:
        """Delete expired or exhausted tokens and return their ids."""

        removed: list[str] = []
        now = self.clock()
        for token_id in self.store.keys():
            with self.store.lock(token_id):
                token = self.get(token_id)
                if token is None or token.usable(now):
                    continue
                self.store.delete(token_id)
                removed.append(token_id)
        return removed


__all__ = ["CredentialIssuer", "Token", "parse_token", "redact_token"]
