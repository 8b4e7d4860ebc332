"""Tests for request signing and verification on both auth paths."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, FixedSigner, FrozenClock
from skvault.auth import (
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    OP_PULL,
    OP_PUSH,
    OP_RULES_READ,
    OP_RULES_WRITE,
    RequestSigner,
    RequestVerifier,
    SessionToken,
    canonical_string,
    verify_signed,
)
from skvault.errors import AuthenticationError, ValidationError
from skvault.models import VaultKey


def _key(signer: FixedSigner, vault_id: str = "v1", revoked: bool = False) -> VaultKey:
    return VaultKey(
        key_id=signer.key_id[-8:],
        vault_id=vault_id,
        public_key=signer.public_line,
        fingerprint=signer.key_id,
        revoked_at=datetime.now(timezone.utc) if revoked else None,
    )


class StaticKeys:
    def __init__(self, keys: list[VaultKey]) -> None:
        self.keys = keys

    def keys_for(self, vault_id: str) -> list[VaultKey]:
        return [k for k in self.keys if k.vault_id == vault_id]


class StaticSessions:
    def __init__(self, sessions: dict[str, SessionToken]) -> None:
        self.sessions = sessions

    def lookup(self, token: str):
        return self.sessions.get(token)


class TestCanonicalString:
    """The signed string is built identically on both ends."""

    def test_layout(self) -> None:
        assert canonical_string(OP_PUSH, "v1", ["laptop", "abc"], 1700) == "push:v1:laptop:abc:1700"

    def test_operation_may_contain_colon(self) -> None:
        assert canonical_string(OP_RULES_READ, "v1", ["laptop"], 5) == "sync-rules:read:v1:laptop:5"

    @pytest.mark.parametrize("vault_id,scope", [("", ["p"]), ("v:1", ["p"]), ("v1", [""]), ("v1", ["a:b"])])
    def test_rejects_ambiguous_parts(self, vault_id: str, scope: list[str]) -> None:
        with pytest.raises(ValidationError):
            canonical_string(OP_PULL, vault_id, scope, 1)


class TestVerifySigned:
    """Server-side verification fails closed."""

    def test_valid_signature_accepted(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_PUSH, "v1", "laptop", "abc")
        key = verify_signed([_key(signer)], req.canonical, req.timestamp, req.signature, now=NOW)
        assert key.fingerprint == signer.key_id

    def test_other_key_does_not_match(self, signer: FixedSigner, clock: FrozenClock) -> None:
        """A signature verifies against its own key and no other registered key."""
        other = FixedSigner(b"\x02" * 32)
        req = RequestSigner(signer, clock=clock).sign_request(OP_PUSH, "v1", "laptop", "abc")
        with pytest.raises(AuthenticationError, match="does not match"):
            verify_signed([_key(other)], req.canonical, req.timestamp, req.signature, now=NOW)
        key = verify_signed(
            [_key(other), _key(signer)], req.canonical, req.timestamp, req.signature, now=NOW
        )
        assert key.fingerprint == signer.key_id

    def test_revoked_key_rejected(self, signer: FixedSigner, clock: FrozenClock) -> None:
        """A mathematically valid signature from a revoked key fails."""
        req = RequestSigner(signer, clock=clock).sign_request(OP_PULL, "v1", "laptop")
        with pytest.raises(AuthenticationError, match="revoked"):
            verify_signed([_key(signer, revoked=True)], req.canonical, req.timestamp, req.signature, now=NOW)

    @pytest.mark.parametrize("skew", [301, -301, 3600])
    def test_stale_timestamp_rejected(self, signer: FixedSigner, clock: FrozenClock, skew: int) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_PULL, "v1", "laptop")
        with pytest.raises(AuthenticationError, match="window"):
            verify_signed([_key(signer)], req.canonical, req.timestamp, req.signature, now=NOW + skew)

    def test_edge_of_window_accepted(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_PULL, "v1", "laptop")
        verify_signed([_key(signer)], req.canonical, req.timestamp, req.signature, now=NOW + 300)

    def test_tampered_payload(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_PUSH, "v1", "laptop", "abc")
        forged = canonical_string(OP_PUSH, "v1", ["laptop", "def"], req.timestamp)
        with pytest.raises(AuthenticationError):
            verify_signed([_key(signer)], forged, req.timestamp, req.signature, now=NOW)

    def test_malformed_signature(self, signer: FixedSigner) -> None:
        with pytest.raises(AuthenticationError, match="Malformed"):
            verify_signed([_key(signer)], "pull:v1:laptop:1", NOW, "%%%", now=NOW)


class TestRequestVerifier:
    """Header-level authentication on the signed and session paths."""

    def _verifier(self, signer: FixedSigner, clock: FrozenClock, sessions=None) -> RequestVerifier:
        return RequestVerifier(StaticKeys([_key(signer)]), sessions, clock=clock)

    def test_signed_headers(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_RULES_READ, "v1", "laptop")
        who = self._verifier(signer, clock).authenticate(req.headers(), OP_RULES_READ, "v1", "laptop")
        assert who == f"key:{signer.key_id}"

    def test_headers_are_case_insensitive(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_RULES_READ, "v1", "laptop")
        headers = {k.lower(): v for k, v in req.headers().items()}
        self._verifier(signer, clock).authenticate(headers, OP_RULES_READ, "v1", "laptop")

    def test_signature_bound_to_scope(self, signer: FixedSigner, clock: FrozenClock) -> None:
        """A request signed for one profile cannot be replayed for another."""
        req = RequestSigner(signer, clock=clock).sign_request(OP_RULES_WRITE, "v1", "laptop")
        with pytest.raises(AuthenticationError):
            self._verifier(signer, clock).authenticate(req.headers(), OP_RULES_WRITE, "v1", "desktop")

    def test_missing_headers(self, signer: FixedSigner, clock: FrozenClock) -> None:
        with pytest.raises(AuthenticationError, match="Missing"):
            self._verifier(signer, clock).authenticate({}, OP_PULL, "v1", "laptop")
        with pytest.raises(AuthenticationError, match="Malformed timestamp"):
            self._verifier(signer, clock).authenticate(
                {HEADER_SIGNATURE: "AAAA", HEADER_TIMESTAMP: "soon"}, OP_PULL, "v1", "laptop"
            )

    def test_unknown_vault(self, signer: FixedSigner, clock: FrozenClock) -> None:
        req = RequestSigner(signer, clock=clock).sign_request(OP_PULL, "v2", "laptop")
        with pytest.raises(AuthenticationError):
            self._verifier(signer, clock).authenticate(req.headers(), OP_PULL, "v2", "laptop")

    def test_verification_does_not_mutate_registry(self, signer: FixedSigner, clock: FrozenClock) -> None:
        keys = StaticKeys([_key(signer)])
        before = [k.model_dump() for k in keys.keys]
        req = RequestSigner(signer, clock=clock).sign_request(OP_PULL, "v1", "laptop")
        RequestVerifier(keys, clock=clock).authenticate(req.headers(), OP_PULL, "v1", "laptop")
        assert [k.model_dump() for k in keys.keys] == before


class TestSessionPath:
    """Bearer tokens unlock dashboard operations only."""

    def _session(self, **overrides) -> SessionToken:
        issued = datetime.fromtimestamp(NOW, tz=timezone.utc)
        data = {
            "token_hash": "h",
            "vault_id": "v1",
            "issued_at": issued,
            "expires_at": issued + timedelta(hours=1),
        }
        data.update(overrides)
        return SessionToken(**data)

    def _verifier(self, clock: FrozenClock, session: SessionToken) -> RequestVerifier:
        return RequestVerifier(StaticKeys([]), StaticSessions({"tok": session}), clock=clock)

    def test_dashboard_operation_allowed(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session())
        headers = {"Authorization": "Bearer tok"}
        assert verifier.authenticate(headers, OP_RULES_WRITE, "v1", "laptop") == "session:v1"

    def test_push_not_allowed(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session())
        with pytest.raises(AuthenticationError, match="not allowed"):
            verifier.authenticate({"Authorization": "Bearer tok"}, OP_PUSH, "v1", "laptop", "abc")

    def test_expired(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session())
        clock.advance(3601)
        with pytest.raises(AuthenticationError, match="expired"):
            verifier.authenticate({"Authorization": "Bearer tok"}, OP_RULES_READ, "v1", "laptop")

    def test_revoked(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session(revoked_at=datetime.now(timezone.utc)))
        with pytest.raises(AuthenticationError, match="revoked"):
            verifier.authenticate({"Authorization": "Bearer tok"}, OP_RULES_READ, "v1", "laptop")

    def test_other_vault(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session())
        with pytest.raises(AuthenticationError, match="different vault"):
            verifier.authenticate({"Authorization": "Bearer tok"}, OP_RULES_READ, "v2", "laptop")

    def test_unknown_token(self, clock: FrozenClock) -> None:
        verifier = self._verifier(clock, self._session())
        with pytest.raises(AuthenticationError, match="Unknown"):
            verifier.authenticate({"Authorization": "Bearer nope"}, OP_RULES_READ, "v1", "laptop")

    def test_tokens_refused_without_store(self, signer: FixedSigner, clock: FrozenClock) -> None:
        verifier = RequestVerifier(StaticKeys([_key(signer)]), None, clock=clock)
        with pytest.raises(AuthenticationError):
            verifier.authenticate({"Authorization": "Bearer tok"}, OP_RULES_READ, "v1", "laptop")
