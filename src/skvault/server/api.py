"""
Vault service HTTP API.

Routes (JSON bodies):

    GET  /v1/health
    GET  /v1/vaults/{vault}/profiles/{profile}/sync-rules   -> {excluded: [...]}
    PUT  /v1/vaults/{vault}/profiles/{profile}/sync-rules   {excluded: [...]}
    GET  /v1/vaults/{vault}/profiles/{profile}/versions     -> {versions: [...]}
    POST /v1/vaults/{vault}/profiles/{profile}/versions     record a push
    POST   /v1/sessions   {owner, code} -> {token, expires_at}
    DELETE /v1/sessions   end the bearer session

``VaultApi.dispatch`` is transport-free so tests can call it directly;
``serve`` wraps it in a stdlib HTTP server.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Optional, Union
from urllib.parse import unquote, urlsplit

from ..auth import (
    DEFAULT_TOLERANCE_SECONDS,
    OP_PUSH,
    OP_RULES_READ,
    OP_RULES_WRITE,
    OP_VERSIONS_LIST,
    RequestVerifier,
)
from ..errors import AuthenticationError, ValidationError
from ..models import VaultVersion
from .store import KeyRegistry, SessionStore, SyncRulesStore, VaultDatabase, VersionLedger

logger = logging.getLogger("skvault.server.api")

DEFAULT_PORT = 7878
MAX_BODY_BYTES = 2 * 1024 * 1024

_PROFILE_ROUTE = re.compile(r"^/v1/vaults/([^/]+)/profiles/([^/]+)/(sync-rules|versions)$")

Response = tuple[int, dict[str, Any]]


class VaultApi:
    """Routes requests to the stores after authenticating them.

    Args:
        db: Service database.
        tolerance_seconds: Clock skew accepted on signed requests.
        verifier: Override the request verifier (tests).
    """

    def __init__(
        self,
        db: VaultDatabase,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        verifier: Optional[RequestVerifier] = None,
    ) -> None:
        self.db = db
        self.keys = KeyRegistry(db)
        self.rules = SyncRulesStore(db)
        self.versions = VersionLedger(db)
        self.sessions = SessionStore(db, self.keys)
        self.verifier = verifier or RequestVerifier(
            self.keys, self.sessions, tolerance_seconds=tolerance_seconds
        )

    def dispatch(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        body: Union[bytes, dict, None] = None,
    ) -> Response:
        """Handle one request and return (status, JSON body)."""
        route = urlsplit(path).path.rstrip("/")
        if route == "/v1/health":
            return 200, {"status": "ok"}
        if route == "/v1/sessions":
            return self._sessions(method, headers, body)

        match = _PROFILE_ROUTE.match(route)
        if match is None:
            return 404, {"error": "Not found"}
        vault_id, profile = unquote(match.group(1)), unquote(match.group(2))
        resource = match.group(3)

        try:
            if resource == "sync-rules":
                if method == "GET":
                    return self._get_rules(headers, vault_id, profile)
                if method == "PUT":
                    return self._put_rules(headers, vault_id, profile, _decode(body))
            elif resource == "versions":
                if method == "GET":
                    return self._list_versions(headers, vault_id, profile)
                if method == "POST":
                    return self._record_version(headers, vault_id, profile, _decode(body))
            return 405, {"error": f"Method {method} not allowed"}
        except AuthenticationError as exc:
            logger.warning("Rejected %s %s: %s", method, route, exc)
            return 401, {"error": str(exc)}
        except ValidationError as exc:
            return 400, {"error": str(exc)}

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _sessions(self, method: str, headers: dict[str, str], body: Union[bytes, dict, None]) -> Response:
        try:
            if method == "POST":
                data = _decode(body)
                owner, code = data.get("owner"), data.get("code")
                if not isinstance(owner, str) or not isinstance(code, str):
                    raise ValidationError("'owner' and 'code' are required")
                token, session = self.sessions.redeem_login_code(owner, code)
                return 200, {
                    "token": token,
                    "vault_id": session.vault_id,
                    "scopes": session.scopes,
                    "expires_at": session.expires_at.isoformat(),
                }
            if method == "DELETE":
                auth = {k.lower(): v for k, v in headers.items()}.get("authorization", "")
                if not auth.startswith("Bearer ") or not self.sessions.revoke_session(auth[7:].strip()):
                    raise AuthenticationError("Unknown session token")
                return 200, {"status": "ok"}
        except AuthenticationError as exc:
            return 401, {"error": str(exc)}
        except ValidationError as exc:
            return 400, {"error": str(exc)}
        return 405, {"error": f"Method {method} not allowed"}

    def _get_rules(self, headers: dict[str, str], vault_id: str, profile: str) -> Response:
        self.verifier.authenticate(headers, OP_RULES_READ, vault_id, profile)
        return 200, {"excluded": sorted(self.rules.get(vault_id, profile))}

    def _put_rules(self, headers: dict[str, str], vault_id: str, profile: str, body: dict) -> Response:
        caller = self.verifier.authenticate(headers, OP_RULES_WRITE, vault_id, profile)
        count = self.rules.put(vault_id, profile, body.get("excluded"))
        logger.info("Sync rules for %s/%s replaced by %s", vault_id, profile, caller)
        return 200, {"status": "ok", "excluded_count": count}

    def _list_versions(self, headers: dict[str, str], vault_id: str, profile: str) -> Response:
        self.verifier.authenticate(headers, OP_VERSIONS_LIST, vault_id, profile)
        versions = self.versions.list_versions(vault_id, profile)
        return 200, {"versions": [v.model_dump(mode="json") for v in versions]}

    def _record_version(self, headers: dict[str, str], vault_id: str, profile: str, body: dict) -> Response:
        content_hash = body.get("content_hash")
        location = body.get("location")
        if not isinstance(content_hash, str) or not isinstance(location, str) or not location:
            raise ValidationError("'content_hash' and 'location' are required")
        caller = self.verifier.authenticate(headers, OP_PUSH, vault_id, profile, content_hash)
        size = body.get("size_bytes", 0)
        if not isinstance(size, int) or size < 0:
            raise ValidationError("'size_bytes' must be a non-negative integer")
        version = self.versions.record(
            VaultVersion(
                version_id=uuid.uuid4().hex,
                vault_id=vault_id,
                location=location,
                size_bytes=size,
                content_hash=content_hash,
                signed_by=caller.split(":", 1)[1],
                profile=profile,
            )
        )
        return 200, {"status": "ok", "version": version.model_dump(mode="json")}


def _decode(body: Union[bytes, dict, None]) -> dict:
    if body is None or body == b"":
        return {}
    if isinstance(body, dict):
        return body
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def make_handler(api: VaultApi) -> type[BaseHTTPRequestHandler]:
    """Bind a request handler class to ``api``."""

    class VaultHandler(BaseHTTPRequestHandler):
        """HTTP front for VaultApi.dispatch."""

        def do_GET(self):
            self._handle("GET")

        def do_PUT(self):
            self._handle("PUT")

        def do_POST(self):
            self._handle("POST")

        def do_DELETE(self):
            self._handle("DELETE")

        def _handle(self, method: str) -> None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = -1
            if length < 0:
                self._json_response({"error": "Invalid Content-Length"}, status=400)
                return
            if length > MAX_BODY_BYTES:
                self._json_response({"error": "Request body too large"}, status=413)
                return
            body = self.rfile.read(length) if length else None
            status, data = api.dispatch(method, self.path, dict(self.headers.items()), body)
            self._json_response(data, status=status)

        def _json_response(self, data: dict, status: int = 200):
            payload = json.dumps(data, default=str).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):
            logger.debug("API: %s", format % args)

    return VaultHandler


def serve(api: VaultApi, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> None:
    """Serve the API until interrupted."""
    server = HTTPServer((host, port), make_handler(api))
    logger.info("Vault API listening on http://%s:%d", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        logger.info("Vault API stopped.")
