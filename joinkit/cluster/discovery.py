"""HTTP discovery endpoint served by the control plane.

Routes::

    GET  /v1/discovery              -> {endpoint, trust_credential, fingerprint}
    POST /v1/enroll                 -> {node, already_enrolled, node_credential}
    POST /v1/nodes/<id>/heartbeat   -> 204 (Authorization: Bearer <node credential>)

Errors are returned as ``{"error": <kind>, "message": <text>}``.
"""

from __future__ import annotations

import json
import sys
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from ..errors import (
    ConfigError,
    JoinkitError,
    NodeIdentityConflictError,
    NotReadyError,
    TokenInvalidError,
)
from .coordinator import BootstrapCoordinator, EnrollmentRequest
from .registry import NodeRole

MAX_BODY_BYTES = 64 * 1024

_STATUS_FOR_ERROR: dict[type[JoinkitError], HTTPStatus] = {
    ConfigError: HTTPStatus.BAD_REQUEST,
    NotReadyError: HTTPStatus.SERVICE_UNAVAILABLE,
    NodeIdentityConflictError: HTTPStatus.CONFLICT,
}


def _log(message: str) -> None:
    print(f"[joinkit] {message}", file=sys.stderr, flush=True)


class _BadRequest(Exception):
    pass


class DiscoveryHandler(BaseHTTPRequestHandler):
    server: "DiscoveryServer"
    server_version = "joinkit"

    def log_message(self, format, *args):  # noqa: A002
        return

    @property
    def coordinator(self) -> BootstrapCoordinator:
        return self.server.coordinator

    def _send_json(self, status: HTTPStatus, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def _send_empty(self, status: HTTPStatus) -> None:
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_error(self, status: HTTPStatus, kind: str, message: str, **extra: Any) -> None:
        self._send_json(status, {"error": kind, "message": message, **extra})

    def _read_json(self) -> dict[str, Any]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError as exc:
            raise _BadRequest("invalid Content-Length") from exc
        if length <= 0:
            raise _BadRequest("request body required")
        if length > MAX_BODY_BYTES:
            raise _BadRequest("request body too large")
        try:
            payload = json.loads(self.rfile.read(length))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _BadRequest(f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise _BadRequest("JSON body must be an object")
        return payload

    def do_GET(self) -> None:  # noqa: N802
        if self.path.rstrip("/") != "/v1/discovery":
            self._send_error(HTTPStatus.NOT_FOUND, "NotFound", f"no route for {self.path}")
            return
        self._dispatch(self._handle_discovery)

    def do_POST(self) -> None:  # noqa: N802
        path = self.path.rstrip("/")
        if path == "/v1/enroll":
            self._dispatch(self._handle_enroll)
            return
        parts = path.split("/")
        if len(parts) == 5 and parts[1:3] == ["v1", "nodes"] and parts[4] == "heartbeat":
            self._dispatch(lambda: self._handle_heartbeat(parts[3]))
            return
        self._send_error(HTTPStatus.NOT_FOUND, "NotFound", f"no route for {self.path}")

    def _dispatch(self, handler) -> None:
        try:
            handler()
        except _BadRequest as exc:
            self._send_error(HTTPStatus.BAD_REQUEST, "BadRequest", str(exc))
        except TokenInvalidError as exc:
            self._send_error(
                HTTPStatus.FORBIDDEN,
                exc.kind,
                str(exc),
                reason=exc.reason,
                token_id=exc.token_id,
            )
        except JoinkitError as exc:
            status = _STATUS_FOR_ERROR.get(type(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
            if status is HTTPStatus.INTERNAL_SERVER_ERROR:
                _log(f"warning: {self.command} {self.path} failed: {exc}")
            self._send_error(status, exc.kind, str(exc))

    def _handle_discovery(self) -> None:
        info = self.coordinator.discovery()
        self._send_json(
            HTTPStatus.OK,
            {
                "endpoint": info.endpoint,
                "trust_credential": info.to_dict()["trust_credential"],
                "fingerprint": info.trust_anchor.fingerprint,
            },
        )

    def _handle_enroll(self) -> None:
        payload = self._read_json()
        try:
            request = EnrollmentRequest(
                token=str(payload["token"]),
                node_id=str(payload["node_id"]),
                identity_key=str(payload["identity_key"]),
                role=NodeRole(str(payload.get("role", NodeRole.WORKER.value))),
                address=str(payload["address"]) if payload.get("address") else None,
            )
        except KeyError as exc:
            raise _BadRequest(f"missing field {exc.args[0]!r}") from exc
        except ValueError as exc:
            raise _BadRequest(str(exc)) from exc

        try:
            result = self.coordinator.enroll(request)
        except TokenInvalidError:
            _log(f"rejected enrollment for {request.node_id} from {self.client_address[0]}")
            raise
        status = HTTPStatus.OK if result.already_enrolled else HTTPStatus.CREATED
        self._send_json(
            status,
            {
                "node": result.node.public_dict(),
                "already_enrolled": result.already_enrolled,
                "node_credential": result.node_credential,
            },
        )

    def _handle_heartbeat(self, node_id: str) -> None:
        header = self.headers.get("Authorization", "")
        scheme, _, credential = header.partition(" ")
        if scheme.lower() != "bearer" or not credential.strip():
            self._send_error(
                HTTPStatus.UNAUTHORIZED, "Unauthorized", "bearer credential required"
            )
            return
        try:
            record = self.coordinator.heartbeat(node_id, credential.strip())
        except PermissionError as exc:
            self._send_error(HTTPStatus.UNAUTHORIZED, "Unauthorized", str(exc))
            return
        except ValueError as exc:
            raise _BadRequest(str(exc)) from exc
        if record is None:
            self._send_error(HTTPStatus.NOT_FOUND, "NotFound", f"unknown node {node_id}")
            return
        self._send_empty(HTTPStatus.NO_CONTENT)


class DiscoveryServer(ThreadingHTTPServer):
    """Threaded HTTP server bound to a :class:`BootstrapCoordinator`."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], coordinator: BootstrapCoordinator) -> None:
        self.coordinator = coordinator
        super().__init__(address, DiscoveryHandler)

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        if host in {"0.0.0.0", "::"}:
            host = "127.0.0.1"
        return f"http://{host}:{port}"

    def start_background(self) -> threading.Thread:
        thread = threading.Thread(
            target=self.serve_forever, name="joinkit-discovery", daemon=True
        )
        thread.start()
        return thread


def serve(coordinator: BootstrapCoordinator, host: str, port: int) -> None:
    """Run the discovery endpoint until interrupted."""

    with DiscoveryServer((host, port), coordinator) as server:
        info = coordinator.control_plane.info()
        if info is None:
            _log("warning: control plane not initialized; discovery answers NotReady")
        else:
            _log(f"trust anchor {info.trust_anchor.fingerprint}")
        _log(f"serving discovery on {host}:{server.server_address[1]}")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            _log("shutting down")


__all__ = ["DiscoveryHandler", "DiscoveryServer", "serve"]
