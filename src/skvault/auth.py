"""
Request authentication: signed requests and dashboard sessions.

Machines sign every request with their vault key. The signed bytes are
a canonical string built the same way on both ends:

    <operation>:<vault_id>:<scope>...:<unix timestamp>

The server reconstructs that string from the request it received and
accepts it only when a registered, non-revoked key of the vault signed
it within the clock tolerance window.

Browsers cannot hold the machine key, so the dashboard uses short-lived
session tokens instead. Tokens only unlock dashboard operations.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from pydantic import BaseModel, Field

from .errors import AuthenticationError, ValidationError
from .keys import Signer, verify_signature
from .models import VaultKey

logger = logging.getLogger("skvault.auth")

OP_PUSH = "push"
OP_PULL = "pull"
OP_RULES_READ = "sync-rules:read"
OP_RULES_WRITE = "sync-rules:write"
OP_VERSIONS_LIST = "versions:list"

SIGNED_OPERATIONS = frozenset(
    {OP_PUSH, OP_PULL, OP_RULES_READ, OP_RULES_WRITE, OP_VERSIONS_LIST}
)
DASHBOARD_OPERATIONS = frozenset({OP_RULES_READ, OP_RULES_WRITE, OP_VERSIONS_LIST})

HEADER_SIGNATURE = "X-Vault-Signature"
HEADER_TIMESTAMP = "X-Vault-Timestamp"
HEADER_KEY = "X-Vault-Key"
HEADER_AUTHORIZATION = "Authorization"

DEFAULT_TOLERANCE_SECONDS = 300


def canonical_string(
    operation: str,
    vault_id: str,
    scope: Iterable[str],
    timestamp: int,
) -> str:
    """Build the exact string that gets signed for an operation.

    The operation itself may contain ``:`` (``sync-rules:read``); it is
    always one of a fixed set, so only the caller-supplied parts are
    restricted.

    Raises:
        ValidationError: If the operation is empty, or the vault id or a
            scope component is empty or contains ``:``.
    """
    if not operation:
        raise ValidationError("Operation must not be empty")
    params = [vault_id, *scope]
    for part in params:
        if not part or ":" in part:
            raise ValidationError(f"Invalid canonical component: {part!r}")
    return ":".join([operation, *params, str(int(timestamp))])


class SignedRequest(BaseModel):
    """Signature material attached to one outbound request."""

    operation: str
    vault_id: str
    scope: list[str] = Field(default_factory=list)
    timestamp: int
    signature: str
    key_id: str = ""

    @property
    def canonical(self) -> str:
        """The string that was signed."""
        return canonical_string(self.operation, self.vault_id, self.scope, self.timestamp)

    def headers(self) -> dict[str, str]:
        """HTTP headers carrying the signature."""
        headers = {
            HEADER_SIGNATURE: self.signature,
            HEADER_TIMESTAMP: str(self.timestamp),
        }
        if self.key_id:
            headers[HEADER_KEY] = self.key_id
        return headers


class RequestSigner:
    """Client side: signs outbound requests with the machine key.

    Args:
        signer: The key that signs (KeyManager in production).
        clock: Source of unix time, injectable for tests.
    """

    def __init__(self, signer: Signer, clock: Callable[[], float] = time.time) -> None:
        self.signer = signer
        self.clock = clock

    def sign_request(self, operation: str, vault_id: str, *scope: str) -> SignedRequest:
        """Sign one request for ``operation`` on ``vault_id``."""
        timestamp = int(self.clock())
        canonical = canonical_string(operation, vault_id, scope, timestamp)
        signature = self.signer.sign(canonical.encode("utf-8"))
        return SignedRequest(
            operation=operation,
            vault_id=vault_id,
            scope=list(scope),
            timestamp=timestamp,
            signature=base64.b64encode(signature).decode("ascii"),
            key_id=self.signer.key_id,
        )


def verify_signed(
    keys: Iterable[VaultKey],
    canonical: str,
    timestamp: int,
    signature_b64: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> VaultKey:
    """Verify a signed request against a vault's registered keys.

    Fails closed: the timestamp window is checked before any signature,
    and a signature that only a revoked key produced is rejected.

    Args:
        keys: Every key registered to the vault, revoked ones included.
        canonical: The canonical string reconstructed server-side.
        timestamp: Timestamp claimed by the request.
        signature_b64: Base64 signature from the request.
        tolerance_seconds: Allowed clock skew in either direction.
        now: Current unix time (defaults to the system clock).

    Returns:
        The key that signed the request.

    Raises:
        AuthenticationError: On stale timestamp, undecodable signature,
            revoked key, or no matching key.
    """
    current = time.time() if now is None else now
    if abs(current - int(timestamp)) > tolerance_seconds:
        raise AuthenticationError("Request timestamp outside the allowed window")

    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationError("Malformed signature") from exc

    payload = canonical.encode("utf-8")
    revoked_match: Optional[VaultKey] = None
    for key in keys:
        if not verify_signature(key.public_key, payload, signature):
            continue
        if key.is_revoked:
            revoked_match = key
            continue
        return key

    if revoked_match is not None:
        logger.warning("Rejected request signed by revoked key %s", revoked_match.fingerprint)
        raise AuthenticationError("Signing key has been revoked")
    raise AuthenticationError("Signature does not match any registered key")


# ---------------------------------------------------------------------------
# Session tokens (dashboard path)
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    """Tokens are stored and compared by hash only."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionToken(BaseModel):
    """A dashboard session as stored server-side."""

    token_hash: str
    vault_id: str
    scopes: list[str] = Field(default_factory=lambda: sorted(DASHBOARD_OPERATIONS))
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    def check(self, operation: str, now: Optional[datetime] = None) -> None:
        """Ensure this session may perform ``operation`` right now.

        Raises:
            AuthenticationError: If revoked, expired, or out of scope.
        """
        current = now or datetime.now(timezone.utc)
        if self.revoked_at is not None:
            raise AuthenticationError("Session has been revoked")
        if current >= self.expires_at:
            raise AuthenticationError("Session has expired")
        if operation not in DASHBOARD_OPERATIONS or operation not in self.scopes:
            raise AuthenticationError(f"Session not allowed to perform '{operation}'")


class KeySource(Protocol):
    def keys_for(self, vault_id: str) -> list[VaultKey]: ...


class SessionSource(Protocol):
    def lookup(self, token: str) -> Optional[SessionToken]: ...


class RequestVerifier:
    """Server side: authenticates inbound requests on either path.

    Reads the key registry and session store; never writes to them.

    Args:
        keys: Registry returning every key of a vault.
        sessions: Store resolving bearer tokens.
        tolerance_seconds: Allowed clock skew for signed requests.
        clock: Source of unix time, injectable for tests.
    """

    def __init__(
        self,
        keys: KeySource,
        sessions: Optional[SessionSource] = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys = keys
        self.sessions = sessions
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def authenticate(
        self,
        headers: dict[str, str],
        operation: str,
        vault_id: str,
        *scope: str,
    ) -> str:
        """Authenticate a request and return who made it.

        Returns:
            ``key:<fingerprint>`` or ``session:<vault_id>``.

        Raises:
            AuthenticationError: When neither path authenticates.
        """
        normalized = {k.lower(): v for k, v in headers.items()}
        auth_header = normalized.get(HEADER_AUTHORIZATION.lower(), "")

        if auth_header.startswith("Bearer "):
            return self._authenticate_session(auth_header[len("Bearer "):].strip(), operation, vault_id)

        signature = normalized.get(HEADER_SIGNATURE.lower())
        raw_ts = normalized.get(HEADER_TIMESTAMP.lower())
        if not signature or not raw_ts:
            raise AuthenticationError("Missing authentication headers")
        if operation not in SIGNED_OPERATIONS:
            raise AuthenticationError(f"Unknown operation '{operation}'")
        try:
            timestamp = int(raw_ts)
        except ValueError as exc:
            raise AuthenticationError("Malformed timestamp") from exc

        try:
            canonical = canonical_string(operation, vault_id, scope, timestamp)
        except ValidationError as exc:
            raise AuthenticationError(str(exc)) from exc

        key = verify_signed(
            self.keys.keys_for(vault_id),
            canonical,
            timestamp,
            signature,
            tolerance_seconds=self.tolerance_seconds,
            now=self.clock(),
        )
        return f"key:{key.fingerprint}"

    def _authenticate_session(self, token: str, operation: str, vault_id: str) -> str:
        if self.sessions is None or not token:
            raise AuthenticationError("Session tokens are not accepted here")
        session = self.sessions.lookup(token)
        if session is None:
            raise AuthenticationError("Unknown session token")
        if session.vault_id != vault_id:
            raise AuthenticationError("Session belongs to a different vault")
        session.check(operation, now=datetime.fromtimestamp(self.clock(), tz=timezone.utc))
        return f"session:{session.vault_id}"
