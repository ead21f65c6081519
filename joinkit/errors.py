"""Error taxonomy shared by the joinkit library and CLI."""

from __future__ import annotations


class JoinkitError(RuntimeError):
    """Base class for failures surfaced to the operator."""

    kind = "Error"
    exit_code = 1


class ConfigError(JoinkitError):
    """Raised when configuration or command-line input is invalid."""

    kind = "ConfigError"
    exit_code = 2


class NotReadyError(JoinkitError):
    """Raised when the control plane has not been initialized yet."""

    kind = "NotReady"
    exit_code = 3


class TrustAnchorMismatchError(JoinkitError):
    """Raised when the discovery endpoint presents an unexpected credential.

    This is a security boundary and is never retried.
    """

    kind = "TrustAnchorMismatch"
    exit_code = 4


class TokenInvalidError(JoinkitError):
    """Raised when a token is malformed, unknown, expired, exhausted or revoked."""

    kind = "TokenInvalid"
    exit_code = 5

    def __init__(self, reason: str, *, token_id: str | None = None) -> None:
        self.reason = reason
        self.token_id = token_id
        if token_id:
            super().__init__(f"token {token_id} rejected: {reason}")
        else:
            super().__init__(f"token rejected: {reason}")


class NetworkUnavailableError(JoinkitError):
    """Raised once the retry budget for a discovery endpoint is exhausted."""

    kind = "NetworkUnavailable"
    exit_code = 6

    def __init__(self, endpoint: str, attempts: int, cause: str) -> None:
        self.endpoint = endpoint
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{endpoint} unreachable after {attempts} attempt(s): {cause}")


class NodeIdentityConflictError(JoinkitError):
    """Raised when a node id is already registered under a different identity."""

    kind = "NodeIdentityConflict"
    exit_code = 7


ERROR_TYPES: dict[str, type[JoinkitError]] = {
    cls.kind: cls
    for cls in (
        JoinkitError,
        ConfigError,
        NotReadyError,
        TrustAnchorMismatchError,
        NodeIdentityConflictError,
    )
}


__all__ = [
    "ConfigError",
    "ERROR_TYPES",
    "JoinkitError",
    "NetworkUnavailableError",
    "NodeIdentityConflictError",
    "NotReadyError",
    "TokenInvalidError",
    "TrustAnchorMismatchError",
]
