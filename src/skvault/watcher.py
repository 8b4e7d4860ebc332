"""
Vault watcher: the one background process per machine.

Polls the vault tree, waits for a burst of edits to settle, then
commits once (and pushes, when auto-push is on). Independently of
local edits it pushes every ``interval_minutes`` so other machines
see this profile even when nothing was typed here.

    sync start  ->  python -m skvault sync watch  (detached)
    sync stop   ->  SIGTERM to the PID in <home>/.watcher.pid

Every cycle goes through the sync lock; when a CLI push or pull holds
it, the cycle is skipped and retried on the next poll.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import LOCAL_DIR, WATCHER_PID_FILE, VaultConfig
from .coordinator import SyncCoordinator
from .errors import SyncInProgressError, VaultError
from .fsutil import content_hash
from .history import ChangeTracker
from .lock import SyncLock, claim_pid, read_pid

logger = logging.getLogger("skvault.watcher")

LOG_FILE = "watcher.log"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class TickResult(str, Enum):
    """What one watcher cycle did."""

    IDLE = "idle"
    SETTLING = "settling"
    COMMITTED = "committed"
    PUSHED = "pushed"
    BUSY = "busy"
    FAILED = "failed"


class VaultWatcher:
    """Coalesces file changes into commits and pushes.

    Args:
        home: Vault home directory.
        config: Vault configuration (sync settings).
        coordinator: Used for pushes; None means commit-only.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        home: Path,
        config: VaultConfig,
        coordinator: Optional[SyncCoordinator] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.home = home
        self.config = config
        self.coordinator = coordinator
        self.tracker = coordinator.tracker if coordinator else ChangeTracker(home, config)
        self.clock = clock
        self.pid_path = home / WATCHER_PID_FILE
        self._stop_event = threading.Event()
        self._signature: Optional[str] = None
        self._changed_at: Optional[float] = None
        self._last_push: Optional[float] = None

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> TickResult:
        """Run one poll cycle.

        A change set is committed only once it has stayed identical for
        ``quiescence_seconds``; every write inside that window restarts
        the wait.
        """
        now = self.clock() if now is None else now
        settings = self.config.sync

        if self._last_push is None:
            self._last_push = now
        push_due = (
            self.coordinator is not None
            and now - self._last_push >= settings.interval_minutes * 60
        )

        if not self.tracker.diff():
            self._signature = None
            self._changed_at = None
            return self._push(now) if push_due else TickResult.IDLE

        signature = content_hash(self.tracker.scan())
        if signature != self._signature or self._changed_at is None:
            self._signature = signature
            self._changed_at = now
            logger.debug("Change detected; waiting for edits to settle")
            return TickResult.SETTLING
        if now - self._changed_at < settings.quiescence_seconds:
            return TickResult.SETTLING

        if settings.auto_push and self.coordinator is not None:
            result = self._push(now)
        else:
            result = self._commit()
        if result in (TickResult.COMMITTED, TickResult.PUSHED):
            self._signature = None
            self._changed_at = None
        return result

    def _commit(self) -> TickResult:
        try:
            with SyncLock(self.home):
                record = self.tracker.commit()
        except SyncInProgressError as exc:
            logger.info("Skipping commit: %s", exc)
            return TickResult.BUSY
        except VaultError as exc:
            logger.error("Commit failed: %s", exc)
            return TickResult.FAILED
        if record is not None:
            logger.info("Committed %s (%d changed paths)", record.commit_id, len(record.changes))
        return TickResult.COMMITTED

    def _push(self, now: float) -> TickResult:
        assert self.coordinator is not None
        try:
            result = self.coordinator.push()
        except SyncInProgressError as exc:
            logger.info("Skipping push: %s", exc)
            return TickResult.BUSY
        except VaultError as exc:
            # Retried at the next interval; the failure is in state.json.
            logger.error("Push failed: %s", exc)
            self._last_push = now
            return TickResult.FAILED
        self._last_push = now
        logger.info(
            "Pushed %d file(s) for profile %s", len(result.transferred), result.profile
        )
        return TickResult.PUSHED

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Run cycles until SIGTERM/SIGINT or :meth:`stop`.

        Raises:
            VaultError: If another watcher is already running.
        """
        if not claim_pid(self.pid_path):
            raise VaultError(f"Watcher already running (PID {read_pid(self.pid_path)})")

        self._setup_logging()
        self._setup_signals()
        logger.info(
            "Watcher started: PID %d, poll=%.1fs, quiescence=%.1fs, push every %dm",
            os.getpid(),
            self.config.sync.poll_seconds,
            self.config.sync.quiescence_seconds,
            self.config.sync.interval_minutes,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    self.tick()
                except OSError as exc:
                    logger.error("Watch cycle failed: %s", exc)
                self._stop_event.wait(timeout=self.config.sync.poll_seconds)
        except KeyboardInterrupt:
            pass
        finally:
            self.pid_path.unlink(missing_ok=True)
            logger.info("Watcher stopped.")

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stop_event.set()

    def _setup_logging(self) -> None:
        log_dir = self.home / LOCAL_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / LOG_FILE)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()


def watcher_pid(home: Path) -> Optional[int]:
    """PID of the running watcher for ``home``, if any."""
    return read_pid(home / WATCHER_PID_FILE)


def stop_watcher(home: Path) -> Optional[int]:
    """Send SIGTERM to the running watcher.

    Returns:
        The signalled PID, or None when no watcher was running.
    """
    pid = watcher_pid(home)
    if pid is None:
        return None
    os.kill(pid, signal.SIGTERM)
    logger.info("Sent SIGTERM to watcher %d", pid)
    return pid
