"""Worker-side enrollment client."""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
import secrets
import socket
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import requests

from ..errors import (
    ERROR_TYPES,
    ConfigError,
    JoinkitError,
    NetworkUnavailableError,
    TokenInvalidError,
)
from .control_plane import validate_endpoint
from .coordinator import EnrollmentResult, validate_node_id
from .registry import NodeRecord, NodeRole
from .tokens import parse_token, redact_token
from .trust import TrustAnchor

IDENTITY_FILE = "identity.json"
CREDENTIAL_FILE = "credential.json"
USER_AGENT = "joinkit-enroll"


def _log(message: str) -> None:
    print(f"[joinkit] {message}", file=sys.stderr, flush=True)


def _warn(message: str) -> None:
    print(f"[joinkit] warning: {message}", file=sys.stderr, flush=True)


def _write_private_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, sort_keys=True)
        handle.write("\n")
    os.replace(tmp_path, path)


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as exc:
        raise JoinkitError(f"Unable to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise JoinkitError(f"{path} does not contain a JSON object")
    return data


def default_node_id() -> str:
    """Host name plus a random suffix, like ``--with-node-id``."""

    host = socket.gethostname().split(".")[0].lower()
    host = re.sub(r"[^a-z0-9-]+", "-", host).strip("-")[:50] or "node"
    return f"{host}-{secrets.token_hex(4)}"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Capped exponential backoff for transient discovery failures."""

    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigError("retry attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""

        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True, slots=True)
class NodeIdentity:
    """Pre-shared identity that makes repeated enrollment idempotent."""

    node_id: str
    key: str

    @classmethod
    def load_or_create(cls, state_dir: Path, node_id: str | None = None) -> "NodeIdentity":
        path = Path(state_dir) / IDENTITY_FILE
        data = _read_json(path)
        if data is not None:
            identity = cls(node_id=str(data["node_id"]), key=str(data["key"]))
            if node_id and node_id != identity.node_id:
                raise ConfigError(
                    f"{path} already identifies this host as {identity.node_id}; "
                    f"remove it to enroll as {node_id}"
                )
            return identity
        identity = cls(
            node_id=validate_node_id(node_id or default_node_id()),
            key=secrets.token_hex(32),
        )
        _write_private_json(path, {"node_id": identity.node_id, "key": identity.key})
        return identity


@dataclass(frozen=True, slots=True)
class NodeCredential:
    """Long-lived node credential; every successful enrollment replaces it."""

    node_id: str
    endpoint: str
    fingerprint: str
    credential: str

    def save(self, state_dir: Path) -> Path:
        path = Path(state_dir) / CREDENTIAL_FILE
        _write_private_json(
            path,
            {
                "node_id": self.node_id,
                "endpoint": self.endpoint,
                "fingerprint": self.fingerprint,
                "credential": self.credential,
            },
        )
        return path

    @classmethod
    def load(cls, state_dir: Path) -> "NodeCredential | None":
        data = _read_json(Path(state_dir) / CREDENTIAL_FILE)
        if data is None:
            return None
        return cls(
            node_id=str(data["node_id"]),
            endpoint=str(data["endpoint"]),
            fingerprint=str(data["fingerprint"]),
            credential=str(data["credential"]),
        )


def _error_payload(response: requests.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        return payload
    return {"message": (response.text or "").strip()[:200]}


def _error_body(response: requests.Response) -> tuple[str, str]:
    payload = _error_payload(response)
    return str(payload.get("error", "")), str(payload.get("message", ""))


def _raise_for_response(response: requests.Response, *, action: str) -> None:
    """Re-raise a control-plane error answer as the matching local error."""

    if response.status_code < 400:
        return
    payload = _error_payload(response)
    kind = str(payload.get("error", ""))
    detail = str(payload.get("message", "")) or f"HTTP {response.status_code}"
    if kind == TokenInvalidError.kind:
        raise TokenInvalidError(
            str(payload.get("reason") or "rejected by control plane"),
            token_id=payload.get("token_id") or None,
        )
    error_type = ERROR_TYPES.get(kind)
    if error_type is not None and error_type is not JoinkitError:
        raise error_type(detail)
    raise JoinkitError(f"{action} failed with HTTP {response.status_code}: {detail}")


class EnrollmentClient:
    """Enroll this host with a control plane.

    Connection failures, timeouts and 5xx answers (other than ``NotReady``)
    are retried according to ``retry``. A trust anchor mismatch and a token
    rejection are surfaced immediately.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        session: requests.Session | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.sleep = sleep

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempts = self.retry.attempts
        cause = "no attempt made"
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                cause = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code < 500:
                    return response
                kind, message = _error_body(response)
                if kind == "NotReady":
                    return response
                cause = f"HTTP {response.status_code} {message}".strip()
            if attempt < attempts:
                delay = self.retry.delay(attempt)
                _warn(
                    f"attempt {attempt}/{attempts} {method} {url}: {cause}; "
                    f"retrying in {delay:.1f}s"
                )
                self.sleep(delay)
            else:
                _warn(f"attempt {attempt}/{attempts} {method} {url}: {cause}")
        raise NetworkUnavailableError(url, attempts, cause)

    def fetch_trust_credential(self, endpoint: str) -> bytes:
        response = self._request("GET", f"{endpoint}/v1/discovery")
        _raise_for_response(response, action="discovery")
        try:
            payload = response.json()
            return base64.b64decode(str(payload["trust_credential"]), validate=True)
        except (ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise JoinkitError(f"malformed discovery response from {endpoint}: {exc}") from exc

    def enroll(
        self,
        endpoint: str,
        fingerprint: str,
        token: str,
        *,
        role: NodeRole = NodeRole.WORKER,
        node_id: str | None = None,
        address: str | None = None,
    ) -> EnrollmentResult:
        endpoint = validate_endpoint(endpoint)
        try:
            anchor = TrustAnchor.parse(fingerprint)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        parse_token(token)
        identity = NodeIdentity.load_or_create(self.state_dir, node_id)

        _log(f"contacting {endpoint} as {identity.node_id}")
        anchor.verify(self.fetch_trust_credential(endpoint), endpoint=endpoint)
        _log(f"trust anchor {anchor.fingerprint} verified")

        response = self._request(
            "POST",
            f"{endpoint}/v1/enroll",
            json={
                "token": token,
                "node_id": identity.node_id,
                "identity_key": identity.key,
                "role": role.value,
                "address": address,
            },
        )
        _raise_for_response(response, action="enrollment")
        try:
            payload = response.json()
            node = NodeRecord.from_dict(payload["node"])
        except (ValueError, KeyError, TypeError) as exc:
            raise JoinkitError(f"malformed enrollment response from {endpoint}: {exc}") from exc

        already_enrolled = bool(payload.get("already_enrolled"))
        credential = payload.get("node_credential")
        if not credential:
            raise JoinkitError(f"enrollment response from {endpoint} carried no node credential")
        path = NodeCredential(
            node_id=node.node_id,
            endpoint=endpoint,
            fingerprint=anchor.fingerprint,
            credential=str(credential),
        ).save(self.state_dir)
        if already_enrolled:
            _log(f"{node.node_id} is already a member; token {redact_token(token)} not consumed")
            _log(f"re-issued node credential saved to {path}")
        else:
            _log(f"enrolled {node.node_id}; node credential saved to {path}")
        return EnrollmentResult(
            node=node, already_enrolled=already_enrolled, node_credential=str(credential)
        )

    def heartbeat(self) -> None:
        stored = NodeCredential.load(self.state_dir)
        if stored is None:
            raise ConfigError(f"no node credential in {self.state_dir}; enroll this host first")
        anchor = TrustAnchor.parse(stored.fingerprint)
        anchor.verify(self.fetch_trust_credential(stored.endpoint), endpoint=stored.endpoint)
        response = self._request(
            "POST",
            f"{stored.endpoint}/v1/nodes/{stored.node_id}/heartbeat",
            headers={"Authorization": f"Bearer {stored.credential}"},
        )
        _raise_for_response(response, action="heartbeat")


__all__ = [
    "EnrollmentClient",
    "NodeCredential",
    "NodeIdentity",
    "RetryPolicy",
    "default_node_id",
]
