"""
Pydantic models for vault state: history, keys, versions, sync.

Configuration lives in config.py; everything here is data that moves
between components or gets persisted next to the vault tree.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ChangeKind(str, Enum):
    """How a path differs between the last snapshot and the tree."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileChange(BaseModel):
    """One changed path. Hashable so diffs can be compared as sets."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: ChangeKind


class CommitRecord(BaseModel):
    """A full snapshot of the vault tree at one point in time.

    ``files`` maps every tracked relative path to the SHA-256 of its
    content; the blobs live in the history object store.
    """

    commit_id: str
    sequence: int
    parent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    hostname: str
    message: str = ""
    files: dict[str, str] = Field(default_factory=dict)
    changes: dict[str, ChangeKind] = Field(default_factory=dict)


class CommitSummary(BaseModel):
    """Lightweight log entry."""

    commit_id: str
    sequence: int
    created_at: datetime
    hostname: str
    message: str = ""
    changed_count: int = 0
    is_head: bool = False


class TrackerStatus(BaseModel):
    """What ``status`` reports about local history and the watcher."""

    watcher_running: bool = False
    watcher_pid: Optional[int] = None
    head: Optional[str] = None
    commits: int = 0
    pending_changes: int = 0
    last_commit: Optional[datetime] = None
    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None


class VaultKey(BaseModel):
    """A public key registered against a vault."""

    key_id: str
    vault_id: str
    public_key: str
    fingerprint: str
    hostname: str = ""
    instance_id: str = ""
    registered_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        """True once the key has been revoked."""
        return self.revoked_at is not None


class VaultVersion(BaseModel):
    """Immutable record of one successful push."""

    model_config = ConfigDict(frozen=True)

    version_id: str
    vault_id: str = ""
    location: str
    size_bytes: int = 0
    content_hash: str
    signed_by: str = ""
    profile: str
    created_at: datetime = Field(default_factory=utcnow)


class KeyHealth(BaseModel):
    """Result of a keypair self-check."""

    fingerprint: Optional[str] = None
    issues: list[str] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        """True when no issues were found."""
        return not self.issues


class SnapshotManifest(BaseModel):
    """Travels with every pushed snapshot so the receiver can verify it."""

    profile: str
    vault_id: str = ""
    hostname: str = ""
    pushed_at: datetime = Field(default_factory=utcnow)
    content_hash: str
    files: dict[str, str] = Field(default_factory=dict)
    size_bytes: int = 0
    signed_by: str = ""
    signed_at: int = 0
    signature: str = ""


class PushReport(BaseModel):
    """What a backend reports after storing a snapshot."""

    location: str
    content_hash: str
    size_bytes: int = 0
    file_count: int = 0
    reused: bool = False


class ReceivedSnapshot(BaseModel):
    """What a backend hands back after a pull, staged on local disk."""

    profile: str
    staging_dir: Path
    manifest: SnapshotManifest


class SyncPhase(str, Enum):
    """Coordinator state machine."""

    IDLE = "idle"
    STAGING = "staging"
    AUTHENTICATING = "authenticating"
    TRANSFERRING = "transferring"
    RECONCILING = "reconciling"
    FAILED = "failed"


class PushResult(BaseModel):
    """Outcome of a coordinator push."""

    profile: str
    committed: bool = False
    transferred: list[str] = Field(default_factory=list)
    excluded: list[str] = Field(default_factory=list)
    report: Optional[PushReport] = None
    version: Optional[VaultVersion] = None
    new_version: bool = False


class PullResult(BaseModel):
    """Outcome of a coordinator pull."""

    profile: str
    applied: bool = False
    written: list[str] = Field(default_factory=list)
    skipped_local: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    content_hash: str = ""


class SyncState(BaseModel):
    """Sync bookkeeping persisted next to local history."""

    last_commit: Optional[datetime] = None
    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    push_count: int = 0
    pull_count: int = 0
    last_error: Optional[str] = None
