"""
Sync rules: which paths a profile keeps to itself.

The default is share-everything; a rule opts one path out for one
(vault, profile) pair. The authoritative table lives server-side
(see ``skvault.server.store``). This module holds the shared path
validation and the client the coordinator uses before every push.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

from .auth import OP_RULES_READ, OP_RULES_WRITE, RequestSigner
from .config import ApiConfig
from .errors import AuthenticationError, TransferError, ValidationError
from .transport import RequestsTransport, Transport

logger = logging.getLogger("skvault.rules")

MAX_PATH_LENGTH = 1024
MAX_PATHS = 1000


def validate_paths(paths: Any) -> list[str]:
    """Validate and deduplicate an exclusion payload.

    Args:
        paths: The ``excluded`` value from a request or caller.

    Returns:
        Sorted, deduplicated, trimmed paths.

    Raises:
        ValidationError: If ``paths`` is not a list, or any entry is not a
            string, is empty, too long, or contains NUL. Nothing is stored
            when any entry fails.
    """
    if not isinstance(paths, (list, tuple, set, frozenset)):
        raise ValidationError("'excluded' must be an array of paths")

    cleaned: set[str] = set()
    for raw in paths:
        if not isinstance(raw, str):
            raise ValidationError(f"Excluded path must be a string, got {type(raw).__name__}")
        path = raw.strip()
        if not path:
            raise ValidationError("Excluded path must not be empty")
        if len(path) > MAX_PATH_LENGTH:
            raise ValidationError(f"Excluded path longer than {MAX_PATH_LENGTH} characters")
        if "\0" in path:
            raise ValidationError("Excluded path must not contain NUL")
        cleaned.add(path)

    if len(cleaned) > MAX_PATHS:
        raise ValidationError(f"At most {MAX_PATHS} excluded paths per profile")
    return sorted(cleaned)


class RulesClient:
    """Reads and replaces a profile's exclusions on the vault service.

    Args:
        api: Service endpoint settings.
        vault_id: Vault the rules belong to.
        signer: Signs each request with the machine key.
        transport: HTTP transport (requests by default).
    """

    def __init__(
        self,
        api: ApiConfig,
        vault_id: str,
        signer: RequestSigner,
        transport: Optional[Transport] = None,
    ) -> None:
        self.api = api
        self.vault_id = vault_id
        self.signer = signer
        self.transport = transport or RequestsTransport()

    def _url(self, profile: str) -> str:
        base = self.api.base_url.rstrip("/")
        return (
            f"{base}/v1/vaults/{quote(self.vault_id, safe='')}"
            f"/profiles/{quote(profile, safe='')}/sync-rules"
        )

    def get(self, profile: str) -> set[str]:
        """Fetch the excluded paths for ``profile``.

        Raises:
            AuthenticationError: On 401.
            TransferError: On any other failure.
        """
        signed = self.signer.sign_request(OP_RULES_READ, self.vault_id, profile)
        status, body = self.transport.request(
            "GET", self._url(profile), signed.headers(), timeout=self.api.timeout_seconds
        )
        self._raise_for_status(status, body)
        excluded = body.get("excluded", [])
        if not isinstance(excluded, list):
            raise TransferError("Service returned a malformed exclusion list")
        return {p for p in excluded if isinstance(p, str)}

    def put(self, profile: str, paths: list[str]) -> int:
        """Replace the full exclusion set for ``profile``.

        Returns:
            Number of paths the service stored.
        """
        cleaned = validate_paths(paths)
        signed = self.signer.sign_request(OP_RULES_WRITE, self.vault_id, profile)
        status, body = self.transport.request(
            "PUT",
            self._url(profile),
            signed.headers(),
            payload={"excluded": cleaned},
            timeout=self.api.timeout_seconds,
        )
        self._raise_for_status(status, body)
        return int(body.get("excluded_count", len(cleaned)))

    @staticmethod
    def _raise_for_status(status: int, body: dict[str, Any]) -> None:
        if status == 200:
            return
        message = body.get("error") or f"HTTP {status}"
        if status == 401:
            raise AuthenticationError(message)
        if status == 400:
            raise ValidationError(message)
        raise TransferError(message)


def fetch_exclusions(client: Optional[RulesClient], profile: str) -> set[str]:
    """Best-effort fetch used right before a push.

    Sync must never block on the rules service, so any failure is
    logged and treated as "no exclusions".
    """
    if client is None:
        return set()
    try:
        return client.get(profile)
    except (TransferError, AuthenticationError, ValidationError) as exc:
        logger.warning(
            "Could not fetch sync rules for profile %s (%s); pushing without exclusions",
            profile,
            exc,
        )
        return set()
