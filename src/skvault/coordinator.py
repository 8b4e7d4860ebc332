"""
Sync coordinator: push and pull with no silent data loss.

    push:  commit -> fetch exclusions -> build transfer set -> sign
           -> backend.push -> record version pointer
    pull:  sign -> backend.pull into staging -> verify -> apply

Phases: idle -> staging -> authenticating -> transferring ->
reconciling -> idle, or -> failed on any error. A failed push records
no version; a failed pull leaves the working tree untouched. All of it
runs under the per-machine sync lock.

Overwrite policy on pull is last-write-wins per path. Machine-local
paths are never written. Shared paths with uncommitted local edits are
reported as conflicts and left alone unless the caller asks to
overwrite; edits captured by an earlier commit stay recoverable through
rollback.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
import uuid
import warnings
from pathlib import Path
from typing import Callable, Optional

from pydantic import TypeAdapter

from .audit import AuditEvent, audit_event
from .auth import OP_PULL, OP_PUSH, RequestSigner, canonical_string
from .backends import StorageBackend, create_backend
from .config import HISTORY_DIR, STAGING_DIR, VaultConfig, validate_profile
from .errors import ConflictWarning, IntegrityError, ValidationError
from .fsutil import atomic_copy, atomic_write_text, content_hash, matches_path, sha256_file
from .history import ChangeTracker, clear_staging, load_sync_state, save_sync_state
from .keys import KeyManager, Signer, fingerprint_of, verify_signature
from .lock import SyncLock
from .models import (
    PullResult,
    PushResult,
    ReceivedSnapshot,
    SnapshotManifest,
    SyncPhase,
    VaultVersion,
    utcnow,
)
from .rules import RulesClient, fetch_exclusions
from .transport import Transport

logger = logging.getLogger("skvault.coordinator")

_VERSIONS = TypeAdapter(list[VaultVersion])


class VersionLedger:
    """Version pointers recorded by successful pushes.

    Stored as one JSON array in ``.history/versions.json``; records are
    only ever appended, and the file is replaced atomically.
    """

    def __init__(self, home: Path) -> None:
        self.path = home / HISTORY_DIR / "versions.json"

    def all(self) -> list[VaultVersion]:
        """Every recorded version, oldest first."""
        if not self.path.exists():
            return []
        return _VERSIONS.validate_json(self.path.read_text(encoding="utf-8"))

    def for_profile(self, profile: str) -> list[VaultVersion]:
        """Versions of one profile, newest first."""
        return [v for v in reversed(self.all()) if v.profile == profile]

    def latest(self, profile: str) -> Optional[VaultVersion]:
        """Newest version of ``profile``, if any."""
        versions = self.for_profile(profile)
        return versions[0] if versions else None

    def record(self, version: VaultVersion) -> None:
        """Append a version record."""
        records = [v.model_dump(mode="json") for v in self.all()]
        records.append(version.model_dump(mode="json"))
        atomic_write_text(self.path, json.dumps(records, indent=2))


class SyncCoordinator:
    """Orchestrates push and pull for one vault home.

    Args:
        home: Vault home directory.
        config: Loaded vault configuration.
        backend: Storage backend for snapshots.
        signer: Machine signing key.
        rules: Client for the exclusion service (None = no service).
        tracker: Local history; built from home/config when omitted.
        clock: Source of unix time for request signing.
    """

    def __init__(
        self,
        home: Path,
        config: VaultConfig,
        backend: StorageBackend,
        signer: Signer,
        rules: Optional[RulesClient] = None,
        tracker: Optional[ChangeTracker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.home = home
        self.config = config
        self.backend = backend
        self.signer = signer
        self.request_signer = RequestSigner(signer, clock=clock)
        self.rules = rules
        self.tracker = tracker or ChangeTracker(home, config)
        self.versions = VersionLedger(home)
        self.phase = SyncPhase.IDLE

    @classmethod
    def from_config(
        cls,
        home: Path,
        config: VaultConfig,
        transport: Optional[Transport] = None,
    ) -> "SyncCoordinator":
        """Wire up the production collaborators for ``home``."""
        keys = KeyManager(home)
        rules = None
        if config.api is not None:
            rules = RulesClient(config.api, config.vault_ref, RequestSigner(keys), transport)
        return cls(home, config, create_backend(config, home), keys, rules=rules)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def transfer_set(self, exclusions: set[str]) -> tuple[list[str], list[str]]:
        """Split the shared tree into (transferred, excluded) paths."""
        transferred: list[str] = []
        excluded: list[str] = []
        for rel in self.tracker.tracked_files():
            if exclusions and matches_path(rel, exclusions):
                excluded.append(rel)
            else:
                transferred.append(rel)
        return transferred, excluded

    def push(self) -> PushResult:
        """Snapshot local state and push it to this machine's profile.

        Raises:
            SyncInProgressError: If another sync holds the lock.
            TransferError: If the backend fails; no version is recorded.
        """
        profile = self.config.profile
        with SyncLock(self.home):
            try:
                self._enter(SyncPhase.STAGING)
                committed = self.tracker.commit() is not None
                exclusions = fetch_exclusions(self.rules, profile)
                files, excluded = self.transfer_set(exclusions)
                hashes = {rel: sha256_file(self.home / rel) for rel in files}
                digest = content_hash(hashes)

                self._enter(SyncPhase.AUTHENTICATING)
                signed = self.request_signer.sign_request(
                    OP_PUSH, self.config.vault_ref, profile, digest
                )
                manifest = SnapshotManifest(
                    profile=profile,
                    vault_id=self.config.vault_ref,
                    hostname=self.config.hostname,
                    content_hash=digest,
                    files=hashes,
                    signed_by=signed.key_id,
                    signed_at=signed.timestamp,
                    signature=signed.signature,
                )

                self._enter(SyncPhase.TRANSFERRING)
                report = self.backend.push(self.home, manifest, signed)

                self._enter(SyncPhase.RECONCILING)
                version, new_version = self._record_version(
                    report.location, report.size_bytes, report.content_hash, signed.key_id
                )

                state = load_sync_state(self.home)
                state.last_push = utcnow()
                state.push_count += 1
                state.last_error = None
                save_sync_state(self.home, state)
            except BaseException as exc:
                self._fail("push", exc)
                raise

            audit_event(
                self.home,
                AuditEvent.SYNC_PUSH,
                f"Pushed {len(files)} file(s) to {self.backend.name} as profile {profile}",
                metadata={"content_hash": digest, "excluded": len(excluded)},
            )
            self._enter(SyncPhase.IDLE)
            logger.info(
                "Push complete: %d file(s), %d excluded, version %s",
                len(files), len(excluded), version.version_id,
            )
            return PushResult(
                profile=profile,
                committed=committed,
                transferred=files,
                excluded=excluded,
                report=report,
                version=version,
                new_version=new_version,
            )

    def _record_version(
        self,
        location: str,
        size_bytes: int,
        digest: str,
        key_id: str,
    ) -> tuple[VaultVersion, bool]:
        latest = self.versions.latest(self.config.profile)
        if latest is not None and latest.content_hash == digest:
            return latest, False
        version = VaultVersion(
            version_id=uuid.uuid4().hex[:16],
            vault_id=self.config.vault_ref,
            location=location,
            size_bytes=size_bytes,
            content_hash=digest,
            signed_by=key_id,
            profile=self.config.profile,
        )
        self.versions.record(version)
        return version, True

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(self, profile: Optional[str] = None, overwrite: bool = False) -> PullResult:
        """Fetch the latest snapshot of ``profile`` and apply it locally.

        Args:
            profile: Profile to pull; defaults to this machine's own.
            overwrite: Apply even when shared paths have uncommitted edits.

        Returns:
            PullResult; ``applied`` is False when nothing was stored
            remotely or when conflicts stopped the overwrite.

        Raises:
            ValidationError: If ``profile`` is not a valid profile name.
            SyncInProgressError: If another sync holds the lock.
            TransferError: If the backend fails or content is corrupt.
        """
        target = validate_profile(profile or self.config.profile)
        staging = self.home / STAGING_DIR / f"pull-{uuid.uuid4().hex[:8]}"
        with SyncLock(self.home):
            try:
                self._enter(SyncPhase.AUTHENTICATING)
                signed = self.request_signer.sign_request(OP_PULL, self.config.vault_ref, target)

                self._enter(SyncPhase.TRANSFERRING)
                staging.mkdir(parents=True, exist_ok=True)
                received = self.backend.pull(target, staging, signed)
                if received is None:
                    self._enter(SyncPhase.IDLE)
                    return PullResult(profile=target)
                self._verify_received(received)

                self._enter(SyncPhase.RECONCILING)
                result = self._apply(received, overwrite)
            except BaseException as exc:
                self._fail("pull", exc)
                raise
            finally:
                clear_staging(staging)

            self._enter(SyncPhase.IDLE)
            return result

    def restore_profile(self, name: str, overwrite: bool = False) -> PullResult:
        """Copy another machine's latest content into the local tree.

        Reads only ``name``'s stored snapshot; this machine's own profile
        and its version records are left as they are.
        """
        logger.info("Restoring profile %s into %s", name, self.home)
        return self.pull(name, overwrite=overwrite)

    def _verify_received(self, received: ReceivedSnapshot) -> None:
        manifest = received.manifest
        for rel, expected in manifest.files.items():
            staged = received.staging_dir / rel
            if not staged.is_file():
                raise IntegrityError(f"Received snapshot is missing {rel}")
            if sha256_file(staged) != expected:
                raise IntegrityError(f"Hash mismatch for {rel}")
        if content_hash(manifest.files) != manifest.content_hash:
            raise IntegrityError("Snapshot content hash does not match its files")
        self._verify_manifest_signature(manifest)

    def _verify_manifest_signature(self, manifest: SnapshotManifest) -> None:
        if not manifest.signature:
            logger.warning("Snapshot for %s is unsigned", manifest.profile)
            return
        known = self._known_public_keys()
        public_line = known.get(manifest.signed_by)
        if public_line is None:
            logger.warning(
                "Snapshot signed by unknown key %s; content hashes verified only",
                manifest.signed_by,
            )
            return
        try:
            signature = base64.b64decode(manifest.signature, validate=True)
            payload = canonical_string(
                OP_PUSH, manifest.vault_id, [manifest.profile, manifest.content_hash], manifest.signed_at
            ).encode("utf-8")
        except (binascii.Error, ValueError, ValidationError) as exc:
            raise IntegrityError(f"Malformed snapshot signature: {exc}") from exc
        if not verify_signature(public_line, payload, signature):
            raise IntegrityError(f"Snapshot signature by {manifest.signed_by} is invalid")
        logger.info("Snapshot signature verified (%s)", manifest.signed_by)

    def _known_public_keys(self) -> dict[str, str]:
        keys: dict[str, str] = {}
        candidates = sorted((self.home / "identity" / "public-keys").glob("*.pub"))
        own = KeyManager(self.home).public_path
        if own.exists():
            candidates.append(own)
        for path in candidates:
            try:
                line = path.read_text(encoding="ascii").strip()
                keys[fingerprint_of(line)] = line
            except (OSError, UnicodeDecodeError, ValidationError) as exc:
                logger.warning("Ignoring unreadable public key %s: %s", path, exc)
        return keys

    def _apply(self, received: ReceivedSnapshot, overwrite: bool) -> PullResult:
        manifest = received.manifest
        current = self.tracker.scan()
        pending = {change.path for change in self.tracker.diff()}

        to_write: list[str] = []
        skipped_local: list[str] = []
        for rel, sha in sorted(manifest.files.items()):
            if self.tracker.is_local(rel):
                skipped_local.append(rel)
            elif current.get(rel) != sha:
                to_write.append(rel)

        conflicts = [rel for rel in to_write if rel in pending]
        result = PullResult(
            profile=manifest.profile,
            skipped_local=skipped_local,
            conflicts=conflicts,
            content_hash=manifest.content_hash,
        )
        if conflicts and not overwrite:
            warnings.warn(
                ConflictWarning(
                    f"{len(conflicts)} path(s) have uncommitted local edits that "
                    f"profile {manifest.profile} would overwrite: {', '.join(conflicts[:5])}"
                ),
                stacklevel=3,
            )
            return result

        for rel in to_write:
            atomic_copy(received.staging_dir / rel, self.home / rel)
        result.written = to_write
        result.applied = True

        if to_write:
            self.tracker.commit(message=f"pull from {manifest.profile} ({manifest.hostname})")
        state = load_sync_state(self.home)
        state.last_pull = utcnow()
        state.pull_count += 1
        state.last_error = None
        save_sync_state(self.home, state)
        audit_event(
            self.home,
            AuditEvent.SYNC_PULL,
            f"Applied {len(to_write)} file(s) from profile {manifest.profile}",
            metadata={"content_hash": manifest.content_hash, "conflicts": len(conflicts)},
        )
        logger.info("Pull complete: %d file(s) written from %s", len(to_write), manifest.profile)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, phase: SyncPhase) -> None:
        logger.debug("Sync phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def _fail(self, operation: str, exc: BaseException) -> None:
        self.phase = SyncPhase.FAILED
        detail = str(exc) or type(exc).__name__
        logger.error("%s failed: %s", operation.capitalize(), detail)
        try:
            state = load_sync_state(self.home)
            state.last_error = f"{operation}: {detail}"
            save_sync_state(self.home, state)
            audit_event(self.home, AuditEvent.SYNC_FAILED, f"{operation}: {detail}")
        except OSError as write_exc:
            logger.error("Could not record sync failure: %s", write_exc)

