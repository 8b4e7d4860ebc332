"""
Storage backends: where pushed snapshots live.

Each backend stores snapshots per profile and hands back the latest one
on pull. The coordinator never cares how bytes move; it only relies on
the push/pull/test/info contract below.

Local: plain directory (USB drive, NAS mount, shared folder).
Git:   any git remote, authenticated with the vault deploy key.

Every stored snapshot carries a manifest (path -> SHA-256, overall
content hash, signature), and backends hash what they actually copied,
so a file that changes mid-transfer fails the push instead of landing
half-updated.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import uuid
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from .auth import SignedRequest
from .config import (
    KEYS_DIR,
    STAGING_DIR,
    GitProviderConfig,
    LocalProviderConfig,
    VaultConfig,
    validate_profile,
)
from .errors import ConfigurationError, IntegrityError, TransferError
from .fsutil import atomic_copy, atomic_write_text, content_hash, sha256_file
from .keys import KEY_NAME
from .models import PushReport, ReceivedSnapshot, SnapshotManifest

logger = logging.getLogger("skvault.backends")

MANIFEST_NAME = "manifest.json"


class StorageBackend(ABC):
    """Abstract snapshot storage."""

    @abstractmethod
    def push(
        self,
        root: Path,
        manifest: SnapshotManifest,
        signed: Optional[SignedRequest] = None,
    ) -> PushReport:
        """Store the files listed in ``manifest`` from ``root``.

        Args:
            root: Vault tree the files are read from.
            manifest: The transfer set with expected hashes.
            signed: Push-scoped request signature, for backends that
                authenticate remotely.

        Returns:
            PushReport describing what was stored.

        Raises:
            TransferError: On any failure; nothing becomes visible to a pull.
        """

    @abstractmethod
    def pull(
        self,
        profile: str,
        dest: Path,
        signed: Optional[SignedRequest] = None,
    ) -> Optional[ReceivedSnapshot]:
        """Copy the latest snapshot of ``profile`` into ``dest``.

        Returns:
            The staged snapshot, or None if the profile has none.

        Raises:
            TransferError: On any failure.
        """

    @abstractmethod
    def test(self) -> bool:
        """Check if the backend is currently reachable."""

    @abstractmethod
    def info(self) -> str:
        """Human-readable description of where snapshots go."""

    def list_profiles(self) -> list[str]:
        """Profiles that have at least one stored snapshot."""
        return []

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend name."""


def copy_verified(root: Path, manifest: SnapshotManifest, dest: Path) -> tuple[str, int]:
    """Copy manifest files from ``root`` to ``dest``, hashing each copy.

    Returns:
        (content hash over the copied bytes, total size in bytes).

    Raises:
        TransferError: If a file is missing or its copy does not match
            the manifest.
    """
    copied: dict[str, str] = {}
    size = 0
    for rel, expected in sorted(manifest.files.items()):
        src = root / rel
        target = dest / rel
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, target)
        except OSError as exc:
            raise TransferError(f"Could not copy {rel}: {exc}") from exc
        actual = sha256_file(target)
        if actual != expected:
            raise TransferError(f"{rel} changed during transfer")
        copied[rel] = actual
        size += target.stat().st_size
    return content_hash(copied), size


def read_manifest(path: Path) -> SnapshotManifest:
    """Load a manifest.json.

    Raises:
        TransferError: If it is missing or unreadable.
        IntegrityError: If it names a path outside the vault tree.
    """
    try:
        manifest = SnapshotManifest.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise TransferError(f"Unreadable snapshot manifest {path}: {exc}") from exc
    for rel in manifest.files:
        parts = PurePosixPath(rel).parts
        if not rel or rel.startswith("/") or ".." in parts or "\\" in rel:
            raise IntegrityError(f"Unsafe path in snapshot manifest: {rel!r}")
    return manifest


class LocalBackend(StorageBackend):
    """Directory backend with content-addressed snapshots.

    Layout under the target directory:
        profiles/<profile>/snapshots/<content hash>/...   files + manifest.json
        profiles/<profile>/LATEST                         hash of newest snapshot

    A snapshot directory is renamed into place only once complete, and
    LATEST is replaced atomically afterwards, so a concurrent pull sees
    either the old snapshot or the new one.
    """

    def __init__(self, config: LocalProviderConfig) -> None:
        self.config = config
        self.target = config.path.expanduser()

    @property
    def name(self) -> str:
        return "local"

    def _profile_dir(self, profile: str) -> Path:
        return self.target / "profiles" / validate_profile(profile)

    def push(
        self,
        root: Path,
        manifest: SnapshotManifest,
        signed: Optional[SignedRequest] = None,
    ) -> PushReport:
        if not self.target.is_dir():
            raise TransferError(f"Target directory not found: {self.target} (is it mounted?)")

        profile_dir = self._profile_dir(manifest.profile)
        snap_dir = profile_dir / "snapshots" / manifest.content_hash
        location = f"profiles/{manifest.profile}/snapshots/{manifest.content_hash}"

        if (snap_dir / MANIFEST_NAME).exists():
            stored = read_manifest(snap_dir / MANIFEST_NAME)
            self._set_latest(profile_dir, manifest.content_hash)
            logger.info("Snapshot %s already stored, reusing", manifest.content_hash[:12])
            return PushReport(
                location=location,
                content_hash=stored.content_hash,
                size_bytes=stored.size_bytes,
                file_count=len(stored.files),
                reused=True,
            )

        incoming = profile_dir / f".incoming-{uuid.uuid4().hex[:8]}"
        try:
            incoming.mkdir(parents=True)
            digest, size = copy_verified(root, manifest, incoming)
            if digest != manifest.content_hash:
                raise TransferError("Transferred content does not match the manifest hash")
            stored = manifest.model_copy(update={"size_bytes": size})
            atomic_write_text(incoming / MANIFEST_NAME, stored.model_dump_json(indent=2))
            snap_dir.parent.mkdir(parents=True, exist_ok=True)
            os.replace(incoming, snap_dir)
            self._set_latest(profile_dir, digest)
        except OSError as exc:
            raise TransferError(f"Local push failed: {exc}") from exc
        finally:
            if incoming.exists():
                shutil.rmtree(incoming, ignore_errors=True)

        logger.info("Snapshot pushed to %s (%d files)", snap_dir, len(manifest.files))
        return PushReport(
            location=location,
            content_hash=digest,
            size_bytes=size,
            file_count=len(manifest.files),
        )

    def pull(
        self,
        profile: str,
        dest: Path,
        signed: Optional[SignedRequest] = None,
    ) -> Optional[ReceivedSnapshot]:
        if not self.target.is_dir():
            raise TransferError(f"Target directory not found: {self.target} (is it mounted?)")

        latest = self._profile_dir(profile) / "LATEST"
        if not latest.exists():
            logger.info("No snapshot stored for profile %s", profile)
            return None

        snap_dir = self._profile_dir(profile) / "snapshots" / latest.read_text(encoding="utf-8").strip()
        manifest = read_manifest(snap_dir / MANIFEST_NAME)
        try:
            for rel in manifest.files:
                target = dest / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(snap_dir / rel, target)
        except OSError as exc:
            raise TransferError(f"Local pull failed: {exc}") from exc

        logger.info("Snapshot pulled from %s", snap_dir)
        return ReceivedSnapshot(profile=profile, staging_dir=dest, manifest=manifest)

    def test(self) -> bool:
        return self.target.is_dir() and os.access(self.target, os.W_OK)

    def info(self) -> str:
        return f"Path: {self.target}"

    def list_profiles(self) -> list[str]:
        profiles_dir = self.target / "profiles"
        if not profiles_dir.is_dir():
            return []
        return sorted(p.name for p in profiles_dir.iterdir() if (p / "LATEST").exists())

    @staticmethod
    def _set_latest(profile_dir: Path, digest: str) -> None:
        atomic_write_text(profile_dir / "LATEST", digest + "\n")


class GitBackend(StorageBackend):
    """Git remote backend (GitHub, Forgejo, Gitea, any SSH/HTTPS remote).

    Keeps a working copy under the machine-local staging area. Each
    profile owns ``profiles/<profile>/`` in the repo; pushing one profile
    never touches another's directory.
    """

    def __init__(self, config: GitProviderConfig, home: Path, timeout: float = 30.0) -> None:
        self.config = config
        self.home = home
        self.timeout = timeout
        self.repo_dir = home / STAGING_DIR / "git"

    @property
    def name(self) -> str:
        return "git"

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        key = self.home / KEYS_DIR / KEY_NAME
        if key.exists():
            env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
        try:
            result = subprocess.run(
                ["git", "-C", str(self.repo_dir), *args],
                capture_output=True,
                text=True,
                check=False,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransferError(f"git {args[0]} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise TransferError(f"git unavailable: {exc}") from exc
        if check and result.returncode != 0:
            raise TransferError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        return result

    def _ensure_repo(self) -> None:
        if (self.repo_dir / ".git").exists():
            return
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        self._git("init", "-q")
        self._git("symbolic-ref", "HEAD", f"refs/heads/{self.config.branch}")
        self._git("remote", "add", "origin", self.config.remote_url)

    def _sync_remote(self) -> bool:
        """Make the working copy match the remote branch.

        Returns:
            False when the remote has no such branch yet; the working
            copy is then started afresh so no unpushed commit survives.

        Raises:
            TransferError: If the remote cannot be reached.
        """
        self._ensure_repo()
        ref = f"refs/heads/{self.config.branch}"
        if not self._git("ls-remote", "origin", ref).stdout.strip():
            shutil.rmtree(self.repo_dir)
            self._ensure_repo()
            return False
        self._git("fetch", "-q", "origin", self.config.branch)
        self._git("reset", "-q", "--hard", f"origin/{self.config.branch}")
        self._git("clean", "-q", "-fd")
        return True

    def _profile_dir(self, profile: str) -> Path:
        return self.repo_dir / "profiles" / validate_profile(profile)

    def push(
        self,
        root: Path,
        manifest: SnapshotManifest,
        signed: Optional[SignedRequest] = None,
    ) -> PushReport:
        profile_dir = self._profile_dir(manifest.profile)
        location = f"git:{self.config.branch}:profiles/{manifest.profile}"
        self._sync_remote()

        stored_path = profile_dir / MANIFEST_NAME
        if stored_path.exists():
            stored = read_manifest(stored_path)
            if stored.content_hash == manifest.content_hash and stored.files == manifest.files:
                logger.info("Snapshot %s already on the remote, reusing", manifest.content_hash[:12])
                return PushReport(
                    location=location,
                    content_hash=stored.content_hash,
                    size_bytes=stored.size_bytes,
                    file_count=len(stored.files),
                    reused=True,
                )

        try:
            if profile_dir.exists():
                shutil.rmtree(profile_dir)
            profile_dir.mkdir(parents=True)
            digest, size = copy_verified(root, manifest, profile_dir)
            if digest != manifest.content_hash:
                raise TransferError("Transferred content does not match the manifest hash")
            stored = manifest.model_copy(update={"size_bytes": size})
            atomic_write_text(stored_path, stored.model_dump_json(indent=2))
        except OSError as exc:
            raise TransferError(f"Git staging failed: {exc}") from exc

        self._git("add", "-A")
        self._git(
            "-c", "user.name=skvault",
            "-c", f"user.email=skvault@{manifest.hostname or 'localhost'}",
            "-c", "commit.gpgsign=false",
            "commit", "-q", "-m",
            f"vault sync {manifest.pushed_at.isoformat()} from {manifest.hostname} [{manifest.profile}]",
        )
        self._git("push", "-q", "origin", f"HEAD:refs/heads/{self.config.branch}")
        logger.info("Snapshot pushed to %s", self.config.remote_url)
        return PushReport(
            location=location,
            content_hash=digest,
            size_bytes=size,
            file_count=len(manifest.files),
        )

    def pull(
        self,
        profile: str,
        dest: Path,
        signed: Optional[SignedRequest] = None,
    ) -> Optional[ReceivedSnapshot]:
        profile_dir = self._profile_dir(profile)
        if not self._sync_remote() or not (profile_dir / MANIFEST_NAME).exists():
            logger.info("No snapshot stored for profile %s", profile)
            return None

        manifest = read_manifest(profile_dir / MANIFEST_NAME)
        try:
            for rel in manifest.files:
                atomic_copy(profile_dir / rel, dest / rel)
        except OSError as exc:
            raise TransferError(f"Git pull failed: {exc}") from exc
        return ReceivedSnapshot(profile=profile, staging_dir=dest, manifest=manifest)

    def test(self) -> bool:
        try:
            self._ensure_repo()
            self._git("ls-remote", "origin")
        except TransferError as exc:
            logger.warning("Git remote unreachable: %s", exc)
            return False
        return True

    def info(self) -> str:
        return f"Remote: {self.config.remote_url} ({self.config.branch})"

    def list_profiles(self) -> list[str]:
        if not self._sync_remote():
            return []
        profiles_dir = self.repo_dir / "profiles"
        if not profiles_dir.is_dir():
            return []
        return sorted(p.name for p in profiles_dir.iterdir() if (p / MANIFEST_NAME).exists())


def create_backend(config: VaultConfig, home: Path) -> StorageBackend:
    """Instantiate the backend named by the vault configuration.

    Raises:
        ConfigurationError: If no provider is configured.
    """
    provider = config.require_provider()
    if isinstance(provider, LocalProviderConfig):
        return LocalBackend(provider)
    if isinstance(provider, GitProviderConfig):
        return GitBackend(provider, home, timeout=config.timeout_seconds)
    raise ConfigurationError(f"Unsupported provider: {provider!r}")
