"""
Local history: append-only snapshots of the vault tree.

Every commit records the full path -> SHA-256 map of the shared tree;
file contents live once each in a content-addressed object store, so
any commit can be diffed against or restored byte for byte.

Storage layout:
    <home>/.history/
    ├── objects/ab/cdef...     # file contents, keyed by SHA-256
    ├── commits/000042-<id>.json
    ├── HEAD                   # commit the working tree is based on
    ├── state.json             # sync bookkeeping (last push/pull...)
    └── versions.json          # version pointers recorded by push

Everything is written to a temporary file and renamed into place, and
HEAD moves only after the commit it names is fully on disk. Rollback
moves HEAD backward; it never deletes a commit.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Iterator, Optional

from .audit import AuditEvent, audit_event
from .config import HISTORY_DIR, MACHINE_LOCAL_PATHS, VaultConfig
from .errors import ConfirmationRequired, VaultError
from .fsutil import (
    atomic_copy,
    atomic_write_text,
    content_hash,
    matches_path,
    prune_empty_dirs,
    sha256_file,
    walk_tree,
)
from .models import (
    ChangeKind,
    CommitRecord,
    CommitSummary,
    FileChange,
    SyncState,
    TrackerStatus,
    utcnow,
)

logger = logging.getLogger("skvault.history")

TRANSIENT_PATTERNS = (".pull-*", ".*.tmp", "*/.*.tmp")


class ChangeTracker:
    """Tracks the vault tree and keeps its local history.

    Args:
        home: Vault home directory (the tree being tracked).
        config: Vault configuration (hostname, extra local-only paths).
    """

    def __init__(self, home: Path, config: VaultConfig) -> None:
        self.home = home
        self.config = config
        self.history_dir = home / HISTORY_DIR
        self.objects_dir = self.history_dir / "objects"
        self.commits_dir = self.history_dir / "commits"
        self.head_file = self.history_dir / "HEAD"
        self._local_patterns = (
            *MACHINE_LOCAL_PATHS,
            *TRANSIENT_PATTERNS,
            *config.local_only,
        )

    # ------------------------------------------------------------------
    # Tree inspection
    # ------------------------------------------------------------------

    def is_local(self, rel_path: str) -> bool:
        """True for paths that never leave this machine."""
        return matches_path(rel_path, self._local_patterns)

    def tracked_files(self) -> list[str]:
        """Every shared file currently in the tree."""
        return walk_tree(self.home, self.is_local)

    def scan(self) -> dict[str, str]:
        """Hash the current tree: relative path -> SHA-256."""
        return {rel: sha256_file(self.home / rel) for rel in self.tracked_files()}

    # ------------------------------------------------------------------
    # History access
    # ------------------------------------------------------------------

    def head(self) -> Optional[CommitRecord]:
        """The commit the working tree is currently based on."""
        if not self.head_file.exists():
            return None
        commit_id = self.head_file.read_text(encoding="utf-8").strip()
        return self.load_commit(commit_id) if commit_id else None

    def commits(self) -> list[CommitRecord]:
        """All commits, oldest first."""
        if not self.commits_dir.exists():
            return []
        records = [
            CommitRecord.model_validate_json(path.read_text(encoding="utf-8"))
            for path in self.commits_dir.glob("*.json")
        ]
        return sorted(records, key=lambda r: r.sequence)

    def load_commit(self, commit_id: str) -> CommitRecord:
        """Load one commit by id.

        Raises:
            VaultError: If no such commit exists.
        """
        matches = list(self.commits_dir.glob(f"*-{commit_id}.json")) if self.commits_dir.exists() else []
        if not matches:
            raise VaultError(f"Commit '{commit_id}' not found in history")
        return CommitRecord.model_validate_json(matches[0].read_text(encoding="utf-8"))

    def blob_path(self, sha: str) -> Path:
        """Where the object store keeps content with hash ``sha``."""
        return self.objects_dir / sha[:2] / sha[2:]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def diff(self) -> set[FileChange]:
        """Paths that differ between HEAD and the working tree."""
        head = self.head()
        return _compare(head.files if head else {}, self.scan())

    def commit(self, message: str = "") -> Optional[CommitRecord]:
        """Record a snapshot if anything changed.

        Returns:
            The new commit, or None when the tree matches HEAD.
        """
        head = self.head()
        current = self.scan()
        changes = _compare(head.files if head else {}, current)
        if not changes:
            logger.info("Nothing to commit")
            return None

        for rel, sha in current.items():
            self._store_blob(self.home / rel, sha)

        sequence = self._next_sequence()
        created = utcnow()
        record = CommitRecord(
            commit_id=_commit_id(head.commit_id if head else None, sequence, current, created.isoformat()),
            sequence=sequence,
            parent=head.commit_id if head else None,
            created_at=created,
            hostname=self.config.hostname,
            message=message or f"vault sync {created.strftime('%Y-%m-%dT%H:%M:%SZ')} from {self.config.hostname}",
            files=current,
            changes={c.path: c.kind for c in sorted(changes, key=lambda c: c.path)},
        )

        self.commits_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self.commits_dir / f"{sequence:06d}-{record.commit_id}.json",
            record.model_dump_json(indent=2),
        )
        self._set_head(record.commit_id)

        state = load_sync_state(self.home)
        state.last_commit = created
        save_sync_state(self.home, state)
        audit_event(
            self.home,
            AuditEvent.COMMIT,
            record.message,
            metadata={"commit_id": record.commit_id, "changed": len(changes)},
        )

        logger.info("Committed %s (%d changed paths)", record.commit_id, len(changes))
        return record

    def rollback(self, confirm: bool = False) -> CommitRecord:
        """Restore the working tree to the snapshot before HEAD.

        Uncommitted edits to shared paths are overwritten. History is
        kept; HEAD simply moves to the previous commit.

        Args:
            confirm: Must be True; rollback discards uncommitted changes.

        Returns:
            The commit that is now HEAD.

        Raises:
            ConfirmationRequired: If ``confirm`` is not set.
            VaultError: If there is no earlier snapshot.
        """
        if not confirm:
            pending = len(self.diff())
            raise ConfirmationRequired(
                f"Rollback overwrites the working tree ({pending} uncommitted change(s) would be lost)."
            )

        head = self.head()
        if head is None or head.parent is None:
            raise VaultError("Nothing to roll back to")
        target = self.load_commit(head.parent)

        self.restore(target.files)
        self._set_head(target.commit_id)
        audit_event(
            self.home,
            AuditEvent.ROLLBACK,
            f"Rolled back from {head.commit_id} to {target.commit_id}",
        )
        logger.info("Rolled back to %s", target.commit_id)
        return target

    def restore(self, files: dict[str, str]) -> None:
        """Make the shared tree match ``files`` exactly, from the object store.

        Raises:
            VaultError: If a needed object is missing from the store.
        """
        for rel, sha in files.items():
            blob = self.blob_path(sha)
            if not blob.exists():
                raise VaultError(f"History object {sha[:12]} for {rel} is missing")

        current = self.scan()
        for rel, sha in files.items():
            if current.get(rel) != sha:
                atomic_copy(self.blob_path(sha), self.home / rel)
        for rel in current:
            if rel not in files:
                target = self.home / rel
                target.unlink()
                prune_empty_dirs(self.home, target.parent)

    def log(self, limit: Optional[int] = None) -> Iterator[CommitSummary]:
        """Commit summaries, newest first.

        Each call starts a fresh walk over the history on disk.
        """
        head = self.head()
        head_id = head.commit_id if head else None
        emitted = 0
        for record in reversed(self.commits()):
            if limit is not None and emitted >= limit:
                return
            emitted += 1
            yield CommitSummary(
                commit_id=record.commit_id,
                sequence=record.sequence,
                created_at=record.created_at,
                hostname=record.hostname,
                message=record.message,
                changed_count=len(record.changes),
                is_head=record.commit_id == head_id,
            )

    def status(self, watcher_pid: Optional[int] = None) -> TrackerStatus:
        """Summarize history, pending changes, and sync times."""
        head = self.head()
        state = load_sync_state(self.home)
        return TrackerStatus(
            watcher_running=watcher_pid is not None,
            watcher_pid=watcher_pid,
            head=head.commit_id if head else None,
            commits=len(self.commits()),
            pending_changes=len(self.diff()),
            last_commit=state.last_commit,
            last_push=state.last_push,
            last_pull=state.last_pull,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store_blob(self, source: Path, sha: str) -> None:
        blob = self.blob_path(sha)
        if blob.exists():
            return
        atomic_copy(source, blob)
        if sha256_file(blob) != sha:
            blob.unlink()
            raise VaultError(f"{source} changed while it was being committed")

    def _next_sequence(self) -> int:
        if not self.commits_dir.exists():
            return 1
        sequences = [int(p.name.split("-", 1)[0]) for p in self.commits_dir.glob("*.json")]
        return max(sequences, default=0) + 1

    def _set_head(self, commit_id: str) -> None:
        atomic_write_text(self.head_file, commit_id + "\n")


def _compare(old: dict[str, str], new: dict[str, str]) -> set[FileChange]:
    changes: set[FileChange] = set()
    for rel, sha in new.items():
        if rel not in old:
            changes.add(FileChange(path=rel, kind=ChangeKind.ADDED))
        elif old[rel] != sha:
            changes.add(FileChange(path=rel, kind=ChangeKind.MODIFIED))
    for rel in old:
        if rel not in new:
            changes.add(FileChange(path=rel, kind=ChangeKind.DELETED))
    return changes


def _commit_id(parent: Optional[str], sequence: int, files: dict[str, str], created: str) -> str:
    seed = f"{parent or ''}:{sequence}:{content_hash(files)}:{created}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


def load_sync_state(home: Path) -> SyncState:
    """Load sync state, falling back to a fresh one if missing or corrupt."""
    state_file = home / HISTORY_DIR / "state.json"
    if state_file.exists():
        try:
            return SyncState.model_validate_json(state_file.read_text(encoding="utf-8"))
        except ValueError as exc:
            logger.warning("Failed to load sync state: %s", exc)
    return SyncState()


def save_sync_state(home: Path, state: SyncState) -> None:
    """Persist sync state atomically."""
    atomic_write_text(home / HISTORY_DIR / "state.json", state.model_dump_json(indent=2))


def clear_staging(path: Path) -> None:
    """Remove a staging directory left behind by an interrupted transfer."""
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
