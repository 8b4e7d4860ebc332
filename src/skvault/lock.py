"""
Process coordination: the sync lock and PID files.

Only one sync operation may run per machine at a time. The lock is a
file created with O_CREAT|O_EXCL holding the owner's PID; a lock whose
owner has died is reclaimed instead of wedging the vault forever.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from types import TracebackType
from typing import Optional

from .config import LOCK_FILE
from .errors import SyncInProgressError

logger = logging.getLogger("skvault.lock")


def pid_alive(pid: int) -> bool:
    """True if a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_pid(pid_path: Path) -> Optional[int]:
    """Read a PID file, removing it if the process is gone.

    Returns:
        The live PID, or None.
    """
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
    except (ValueError, OSError):
        pid_path.unlink(missing_ok=True)
        return None
    if not pid_alive(pid):
        pid_path.unlink(missing_ok=True)
        return None
    return pid


def claim_pid(pid_path: Path) -> bool:
    """Atomically record the current process in ``pid_path``.

    The file is created with O_CREAT|O_EXCL, so of two processes
    starting together only one wins. A file left by a dead process is
    reclaimed.

    Returns:
        True if the file is now ours, False if a live process owns it.
    """
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(pid_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            if read_pid(pid_path) is not None:
                return False
            logger.warning("Reclaimed stale PID file %s", pid_path)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return True
    return False


class SyncLock:
    """Exclusive per-machine lock around commit/push/pull.

    Usage:
        with SyncLock(home):
            ...

    Raises:
        SyncInProgressError: On enter, if another live process holds it.
    """

    def __init__(self, home: Path) -> None:
        self.path = home / LOCK_FILE
        self._held = False

    def acquire(self) -> None:
        """Take the lock or fail immediately."""
        if not claim_pid(self.path):
            holder = read_pid(self.path)
            raise SyncInProgressError(f"Already syncing (PID {holder})" if holder else "Already syncing")
        self._held = True

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    @property
    def held(self) -> bool:
        """True while this instance owns the lock."""
        return self._held

    def __enter__(self) -> "SyncLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.release()
