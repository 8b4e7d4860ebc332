"""Tests for sync rules on both ends of the wire."""

from __future__ import annotations

import pytest

from conftest import ApiTransport, FixedSigner, FrozenClock
from skvault.auth import RequestSigner
from skvault.config import ApiConfig
from skvault.errors import AuthenticationError, TransferError, ValidationError
from skvault.rules import MAX_PATH_LENGTH, MAX_PATHS, RulesClient, fetch_exclusions, validate_paths
from skvault.server.api import VaultApi
from skvault.server.store import SyncRulesStore, VaultDatabase
from skvault.transport import Transport

API = ApiConfig(base_url="http://vault.test")


class TestValidatePaths:
    """Boundary validation shared by client and server."""

    def test_dedupes_and_trims(self) -> None:
        assert validate_paths([" secrets.yaml", "secrets.yaml", "notes/"]) == ["notes/", "secrets.yaml"]

    def test_empty_list_ok(self) -> None:
        assert validate_paths([]) == []

    @pytest.mark.parametrize(
        "bad",
        [
            "secrets.yaml",
            None,
            {"excluded": []},
            [""],
            ["   "],
            [42],
            ["a\0b"],
            ["x" * (MAX_PATH_LENGTH + 1)],
        ],
    )
    def test_rejects(self, bad) -> None:
        with pytest.raises(ValidationError):
            validate_paths(bad)

    def test_max_length_accepted(self) -> None:
        assert validate_paths(["x" * MAX_PATH_LENGTH]) == ["x" * MAX_PATH_LENGTH]

    def test_too_many_paths(self) -> None:
        with pytest.raises(ValidationError):
            validate_paths([f"p{i}" for i in range(MAX_PATHS + 1)])


class TestSyncRulesStore:
    """Server-side table semantics."""

    @pytest.fixture
    def rules(self, db: VaultDatabase, registered: str) -> SyncRulesStore:
        return SyncRulesStore(db)

    def test_empty_by_default(self, rules: SyncRulesStore, registered: str) -> None:
        assert rules.get(registered, "laptop") == set()

    def test_put_get_roundtrip(self, rules: SyncRulesStore, registered: str) -> None:
        count = rules.put(registered, "laptop", ["secrets.yaml", "secrets.yaml", "local-notes/"])
        assert count == 2
        assert rules.get(registered, "laptop") == {"secrets.yaml", "local-notes/"}

    def test_put_is_idempotent(self, rules: SyncRulesStore, registered: str) -> None:
        rules.put(registered, "laptop", ["a", "b"])
        rules.put(registered, "laptop", ["a", "b"])
        assert rules.get(registered, "laptop") == {"a", "b"}

    def test_put_replaces_wholesale(self, rules: SyncRulesStore, registered: str) -> None:
        rules.put(registered, "laptop", ["a", "b"])
        rules.put(registered, "laptop", ["c"])
        assert rules.get(registered, "laptop") == {"c"}

    def test_put_empty_clears(self, rules: SyncRulesStore, registered: str) -> None:
        rules.put(registered, "laptop", ["a"])
        assert rules.put(registered, "laptop", []) == 0
        assert rules.get(registered, "laptop") == set()

    def test_invalid_put_changes_nothing(self, rules: SyncRulesStore, registered: str) -> None:
        rules.put(registered, "laptop", ["keep"])
        with pytest.raises(ValidationError):
            rules.put(registered, "laptop", ["ok", ""])
        assert rules.get(registered, "laptop") == {"keep"}

    def test_profiles_are_independent(self, rules: SyncRulesStore, registered: str) -> None:
        rules.put(registered, "laptop", ["a"])
        rules.put(registered, "desktop", ["b"])
        assert rules.get(registered, "laptop") == {"a"}
        assert rules.get(registered, "desktop") == {"b"}


class TestRulesClient:
    """Client round trips through the in-process API."""

    def _client(self, api: VaultApi, vault_id: str, signer: FixedSigner, clock: FrozenClock) -> RulesClient:
        return RulesClient(API, vault_id, RequestSigner(signer, clock=clock), ApiTransport(api))

    def test_put_then_get(self, api: VaultApi, registered: str, signer: FixedSigner, clock: FrozenClock) -> None:
        client = self._client(api, registered, signer, clock)
        assert client.put("laptop", ["secrets.yaml", "drafts/"]) == 2
        assert client.get("laptop") == {"secrets.yaml", "drafts/"}

    def test_unregistered_key_is_auth_error(
        self, api: VaultApi, registered: str, clock: FrozenClock
    ) -> None:
        client = self._client(api, registered, FixedSigner(b"\x09" * 32), clock)
        with pytest.raises(AuthenticationError):
            client.get("laptop")

    def test_clock_skew_is_auth_error(
        self, api: VaultApi, registered: str, signer: FixedSigner
    ) -> None:
        client = self._client(api, registered, signer, FrozenClock(0))
        with pytest.raises(AuthenticationError):
            client.get("laptop")

    def test_invalid_paths_never_sent(
        self, api: VaultApi, registered: str, signer: FixedSigner, clock: FrozenClock
    ) -> None:
        transport = ApiTransport(api)
        client = RulesClient(API, registered, RequestSigner(signer, clock=clock), transport)
        with pytest.raises(ValidationError):
            client.put("laptop", [""])
        assert transport.calls == []

    def test_url_layout(self, api: VaultApi, registered: str, signer: FixedSigner, clock: FrozenClock) -> None:
        transport = ApiTransport(api)
        RulesClient(API, registered, RequestSigner(signer, clock=clock), transport).get("laptop")
        assert transport.calls == [("GET", f"/v1/vaults/{registered}/profiles/laptop/sync-rules")]


class FailingTransport(Transport):
    def request(self, method, url, headers, payload=None, timeout=10.0):
        raise TransferError("connection refused")


class TestFetchExclusions:
    """Best-effort fetch used before each push."""

    def test_no_client(self) -> None:
        assert fetch_exclusions(None, "laptop") == set()

    def test_unreachable_service_means_no_exclusions(
        self, signer: FixedSigner, caplog: pytest.LogCaptureFixture
    ) -> None:
        client = RulesClient(API, "v1", RequestSigner(signer), FailingTransport())
        with caplog.at_level("WARNING", logger="skvault.rules"):
            assert fetch_exclusions(client, "laptop") == set()
        assert "Could not fetch sync rules" in caplog.text

    def test_auth_failure_means_no_exclusions(
        self, api: VaultApi, registered: str, clock: FrozenClock
    ) -> None:
        client = RulesClient(API, registered, RequestSigner(FixedSigner(b"\x07" * 32), clock=clock), ApiTransport(api))
        assert fetch_exclusions(client, "laptop") == set()
