"""
Filesystem helpers shared by history, backends, and the coordinator.

Hashing, atomic writes, tree walking, and path-prefix matching.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Optional


def sha256_file(path: Path) -> str:
    """Compute SHA-256 hex digest of a file.

    Args:
        path: File to hash.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hex digest of bytes."""
    return hashlib.sha256(data).hexdigest()


def content_hash(files: dict[str, str]) -> str:
    """Deterministic digest over a path -> file-hash mapping.

    Two trees with the same paths and the same bytes always hash the
    same, regardless of walk order or timestamps.
    """
    h = hashlib.sha256()
    for rel_path in sorted(files):
        h.update(rel_path.encode("utf-8"))
        h.update(b"\0")
        h.update(files[rel_path].encode("ascii"))
        h.update(b"\n")
    return h.hexdigest()


def atomic_write_bytes(path: Path, data: bytes, mode: Optional[int] = None) -> None:
    """Write ``data`` to ``path`` so readers see either old or new content.

    The bytes go to a temporary file in the same directory, are flushed
    to disk, and then renamed over the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str, mode: Optional[int] = None) -> None:
    """Text variant of :func:`atomic_write_bytes` (UTF-8)."""
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


def atomic_copy(src: Path, dst: Path) -> None:
    """Copy a file into place via a temporary sibling and a rename."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dst.name}.", suffix=".tmp", dir=dst.parent)
    os.close(fd)
    try:
        shutil.copy2(src, tmp_name)
        os.replace(tmp_name, dst)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def matches_path(rel_path: str, patterns: Iterable[str]) -> bool:
    """Check a relative path against exclusion patterns.

    A pattern matches the path itself, anything beneath it when it names
    a directory, or the path as a shell glob.
    """
    rel = rel_path.strip("/")
    for pattern in patterns:
        pat = pattern.strip().strip("/")
        if pat.startswith("./"):
            pat = pat[2:]
        if not pat:
            continue
        if rel == pat or rel.startswith(pat + "/"):
            return True
        if any(c in pat for c in "*?[") and fnmatch.fnmatch(rel, pat):
            return True
    return False


def walk_tree(root: Path, skip: Callable[[str], bool]) -> list[str]:
    """List regular files under ``root`` as sorted POSIX relative paths.

    Args:
        root: Directory to walk.
        skip: Predicate on a relative path; matching directories are
            pruned and matching files are left out.

    Returns:
        Sorted relative paths.
    """
    found: list[str] = []
    if not root.exists():
        return found
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath).relative_to(root)
        kept = []
        for d in sorted(dirnames):
            rel = (base / d).as_posix()
            if not skip(rel) and not (Path(dirpath) / d).is_symlink():
                kept.append(d)
        dirnames[:] = kept
        for fname in filenames:
            rel = (base / fname).as_posix()
            full = Path(dirpath) / fname
            if skip(rel) or not full.is_file() or full.is_symlink():
                continue
            found.append(rel)
    return sorted(found)


def prune_empty_dirs(root: Path, start: Path) -> None:
    """Remove empty directories from ``start`` upward, stopping at ``root``."""
    current = start
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent
