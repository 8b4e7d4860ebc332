"""Tests for snapshot storage backends."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from conftest import FixedSigner, FrozenClock, write_files
from skvault import backends
from skvault.backends import (
    MANIFEST_NAME,
    GitBackend,
    LocalBackend,
    create_backend,
    read_manifest,
)
from skvault.config import GitProviderConfig, LocalProviderConfig, VaultConfig
from skvault.coordinator import SyncCoordinator
from skvault.errors import ConfigurationError, IntegrityError, TransferError, ValidationError
from skvault.fsutil import content_hash, sha256_file
from skvault.models import SnapshotManifest


def _manifest(root: Path, profile: str = "laptop") -> SnapshotManifest:
    files = {
        p.relative_to(root).as_posix(): sha256_file(p)
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }
    return SnapshotManifest(profile=profile, hostname="laptop", content_hash=content_hash(files), files=files)


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    write_files(root, {"notes.md": "hello", "knowledge/a.md": "alpha"})
    return root


@pytest.fixture
def backend(store_dir: Path) -> LocalBackend:
    return LocalBackend(LocalProviderConfig(path=store_dir))


class TestLocalBackend:
    """Directory backend used for USB drives and NAS mounts."""

    def test_push_then_pull(self, backend: LocalBackend, tree: Path, tmp_path: Path) -> None:
        manifest = _manifest(tree)
        report = backend.push(tree, manifest)
        assert report.content_hash == manifest.content_hash
        assert report.file_count == 2
        assert report.size_bytes == len("hello") + len("alpha")
        assert not report.reused

        dest = tmp_path / "staging"
        received = backend.pull("laptop", dest)
        assert received is not None
        assert received.manifest.content_hash == manifest.content_hash
        assert (dest / "knowledge" / "a.md").read_text() == "alpha"

    def test_layout(self, backend: LocalBackend, tree: Path, store_dir: Path) -> None:
        manifest = _manifest(tree)
        report = backend.push(tree, manifest)
        snap = store_dir / report.location
        assert (snap / MANIFEST_NAME).exists()
        assert (store_dir / "profiles" / "laptop" / "LATEST").read_text().strip() == manifest.content_hash
        assert not list((store_dir / "profiles" / "laptop").glob(".incoming-*"))

    def test_identical_snapshot_reused(self, backend: LocalBackend, tree: Path) -> None:
        manifest = _manifest(tree)
        backend.push(tree, manifest)
        again = backend.push(tree, manifest)
        assert again.reused
        assert again.file_count == 2

    def test_latest_moves(self, backend: LocalBackend, tree: Path, tmp_path: Path) -> None:
        backend.push(tree, _manifest(tree))
        write_files(tree, {"notes.md": "changed"})
        backend.push(tree, _manifest(tree))
        dest = tmp_path / "staging"
        backend.pull("laptop", dest)
        assert (dest / "notes.md").read_text() == "changed"

    def test_profiles_are_isolated(self, backend: LocalBackend, tree: Path, tmp_path: Path) -> None:
        backend.push(tree, _manifest(tree, "alice-laptop"))
        other = tmp_path / "other"
        write_files(other, {"desk.md": "desktop only"})
        backend.push(other, _manifest(other, "alice-desktop"))

        dest = tmp_path / "staging"
        received = backend.pull("alice-laptop", dest)
        assert set(received.manifest.files) == {"notes.md", "knowledge/a.md"}
        assert not (dest / "desk.md").exists()
        assert backend.list_profiles() == ["alice-desktop", "alice-laptop"]

    def test_unknown_profile(self, backend: LocalBackend, tmp_path: Path) -> None:
        assert backend.pull("nobody", tmp_path / "staging") is None

    def test_missing_target(self, tmp_path: Path, tree: Path) -> None:
        """An unmounted drive fails the transfer instead of creating a directory."""
        backend = LocalBackend(LocalProviderConfig(path=tmp_path / "unmounted"))
        with pytest.raises(TransferError, match="not found"):
            backend.push(tree, _manifest(tree))
        with pytest.raises(TransferError):
            backend.pull("laptop", tmp_path / "staging")
        assert not backend.test()

    def test_file_changed_mid_transfer(self, backend: LocalBackend, tree: Path, store_dir: Path) -> None:
        """Nothing becomes visible when the copy does not match the manifest."""
        manifest = _manifest(tree)
        write_files(tree, {"notes.md": "edited after hashing"})
        with pytest.raises(TransferError, match="changed during transfer"):
            backend.push(tree, manifest)
        assert backend.list_profiles() == []
        assert not list((store_dir / "profiles" / "laptop").glob(".incoming-*"))

    def test_reachable(self, backend: LocalBackend) -> None:
        assert backend.test()
        assert backend.name == "local"
        assert "Path:" in backend.info()


class TestReadManifest:
    @pytest.mark.parametrize("bad", ["../escape.md", "/etc/passwd", "a/../../b", "win\\path"])
    def test_unsafe_paths_rejected(self, tmp_path: Path, bad: str) -> None:
        path = tmp_path / MANIFEST_NAME
        path.write_text(SnapshotManifest(profile="p", content_hash="x", files={bad: "0" * 64}).model_dump_json())
        with pytest.raises(IntegrityError):
            read_manifest(path)

    def test_unreadable(self, tmp_path: Path) -> None:
        with pytest.raises(TransferError):
            read_manifest(tmp_path / MANIFEST_NAME)
        (tmp_path / MANIFEST_NAME).write_text("{not json")
        with pytest.raises(TransferError):
            read_manifest(tmp_path / MANIFEST_NAME)


class TestCreateBackend:
    def test_local(self, vault_home: Path, config: VaultConfig) -> None:
        assert isinstance(create_backend(config, vault_home), LocalBackend)

    def test_git(self, vault_home: Path, config: VaultConfig) -> None:
        config.provider = GitProviderConfig(remote_url="git@example.com:me/vault.git")
        backend = create_backend(config, vault_home)
        assert isinstance(backend, GitBackend)
        assert backend.timeout == config.timeout_seconds
        assert "example.com" in backend.info()

    def test_no_provider(self, vault_home: Path, config: VaultConfig) -> None:
        config.provider = None
        with pytest.raises(ConfigurationError, match="No storage provider"):
            create_backend(config, vault_home)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _remote_commits(remote: Path, branch: str = "main") -> int:
    out = subprocess.run(
        ["git", "--git-dir", str(remote), "rev-list", "--count", branch],
        capture_output=True,
        text=True,
        check=True,
    )
    return int(out.stdout.strip())


@pytest.fixture
def remote(tmp_path: Path) -> Path:
    """An empty bare repository standing in for GitHub or Forgejo."""
    path = tmp_path / "remote.git"
    subprocess.run(["git", "init", "-q", "--bare", str(path)], check=True)
    return path


def _git_backend(remote: Path, home: Path, timeout: float = 30.0) -> GitBackend:
    home.mkdir(parents=True, exist_ok=True)
    return GitBackend(GitProviderConfig(remote_url=str(remote)), home, timeout=timeout)


@requires_git
class TestGitBackend:
    """Each machine keeps its own working copy of one shared remote."""

    def test_pull_before_any_push(self, remote: Path, tmp_path: Path) -> None:
        backend = _git_backend(remote, tmp_path / "laptop")
        assert backend.pull("laptop", tmp_path / "staging") is None
        assert backend.list_profiles() == []
        assert backend.test()

    def test_push_then_pull_elsewhere(self, remote: Path, tree: Path, tmp_path: Path) -> None:
        manifest = _manifest(tree)
        report = _git_backend(remote, tmp_path / "laptop").push(tree, manifest)
        assert not report.reused
        assert report.content_hash == manifest.content_hash
        assert report.size_bytes == len("hello") + len("alpha")

        dest = tmp_path / "staging"
        received = _git_backend(remote, tmp_path / "desktop").pull("laptop", dest)
        assert received is not None
        assert received.manifest.content_hash == manifest.content_hash
        assert (dest / "knowledge" / "a.md").read_text() == "alpha"

    def test_identical_push_adds_no_commit(self, remote: Path, tree: Path, tmp_path: Path) -> None:
        backend = _git_backend(remote, tmp_path / "laptop")
        backend.push(tree, _manifest(tree))
        again = backend.push(tree, _manifest(tree))
        assert again.reused
        assert again.file_count == 2
        assert _remote_commits(remote) == 1

        write_files(tree, {"notes.md": "changed"})
        assert not backend.push(tree, _manifest(tree)).reused
        assert _remote_commits(remote) == 2

    def test_profiles_are_isolated(self, remote: Path, tree: Path, tmp_path: Path) -> None:
        _git_backend(remote, tmp_path / "laptop").push(tree, _manifest(tree, "alice-laptop"))
        other = tmp_path / "other"
        write_files(other, {"desk.md": "desktop only"})
        desktop = _git_backend(remote, tmp_path / "desktop")
        desktop.push(other, _manifest(other, "alice-desktop"))

        dest = tmp_path / "staging"
        received = desktop.pull("alice-laptop", dest)
        assert set(received.manifest.files) == {"notes.md", "knowledge/a.md"}
        assert not (dest / "desk.md").exists()
        assert desktop.list_profiles() == ["alice-desktop", "alice-laptop"]

    def test_unreachable_remote(self, tree: Path, tmp_path: Path) -> None:
        backend = _git_backend(tmp_path / "missing.git", tmp_path / "laptop")
        with pytest.raises(TransferError):
            backend.push(tree, _manifest(tree))
        with pytest.raises(TransferError):
            backend.pull("laptop", tmp_path / "staging")
        assert not backend.test()

    def test_unreachable_remote_records_no_version(
        self, vault_home: Path, config: VaultConfig, signer: FixedSigner, clock: FrozenClock, tmp_path: Path
    ) -> None:
        write_files(vault_home, {"notes.md": "x"})
        backend = _git_backend(tmp_path / "missing.git", vault_home)
        coordinator = SyncCoordinator(vault_home, config, backend, signer, clock=clock)
        with pytest.raises(TransferError):
            coordinator.push()
        assert coordinator.versions.all() == []

    def test_repeat_push_through_coordinator(
        self, remote: Path, vault_home: Path, config: VaultConfig, signer: FixedSigner, clock: FrozenClock
    ) -> None:
        write_files(vault_home, {"notes.md": "x"})
        coordinator = SyncCoordinator(vault_home, config, _git_backend(remote, vault_home), signer, clock=clock)
        assert coordinator.push().new_version
        clock.advance(60)
        second = coordinator.push()
        assert not second.new_version
        assert second.report.reused
        assert _remote_commits(remote) == 1

    def test_timeout_is_a_transfer_error(
        self, remote: Path, tree: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def hang(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        backend = _git_backend(remote, tmp_path / "laptop", timeout=0.5)
        monkeypatch.setattr(backends.subprocess, "run", hang)
        with pytest.raises(TransferError, match="timed out"):
            backend.push(tree, _manifest(tree))
        assert not backend.test()


class TestProfileNames:
    """Profiles name one directory under ``profiles/`` and nothing else."""

    @pytest.mark.parametrize("bad", ["../outside", "..", "a/b", "", ".hidden", "x" * 65])
    def test_local_backend_rejects(self, backend: LocalBackend, tree: Path, tmp_path: Path, bad: str) -> None:
        with pytest.raises(ValidationError):
            backend.push(tree, _manifest(tree, bad))
        with pytest.raises(ValidationError):
            backend.pull(bad, tmp_path / "staging")
        assert not (tmp_path / "outside").exists()

    def test_git_backend_rejects(self, tree: Path, tmp_path: Path) -> None:
        """Checked before any git command runs."""
        backend = _git_backend(tmp_path / "remote.git", tmp_path / "laptop")
        with pytest.raises(ValidationError):
            backend.push(tree, _manifest(tree, "../../outside"))
        with pytest.raises(ValidationError):
            backend.pull("../../outside", tmp_path / "staging")
