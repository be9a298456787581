"""Re-arm the background watcher on boot and after an upgrade."""
from __future__ import annotations

import logging
import subprocess
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Union

from bletether.errors import StorageError
from bletether.storage import SqlKeyValueStore, WatcherLease
from bletether.tracker import WatcherControl

logger = logging.getLogger(__name__)


class AutostartAction(str, Enum):
    BOOT_COMPLETED = "boot-completed"
    PACKAGE_REPLACED = "package-replaced"


class AutostartHook:
    """Relaunch the watcher for lifecycle actions that stop it.

    Whether anything is actually watched is left to the watcher: it exits on
    its first tick when no device is paired.
    """

    def __init__(self, launcher: WatcherControl) -> None:
        self.launcher = launcher

    def handle(self, action: Union[AutostartAction, str]) -> bool:
        try:
            action = AutostartAction(action)
        except ValueError:
            logger.debug("Ignoring autostart action %r", action)
            return False
        logger.info("Autostart (%s): launching background watcher", action.value)
        self.launcher.start()
        return True


class ProcessWatcherControl:
    """Runs ``python -m bletether watch`` as a child process.

    Nothing is launched while another live process holds the watcher lease
    in the shared database; a second watcher that slips through the check
    still exits on its own when it fails to claim the lease.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        extra_args: Sequence[str] = (),
        python: Optional[str] = None,
        stop_timeout: float = 5.0,
        lease: Optional[WatcherLease] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.extra_args = list(extra_args)
        self.python = python or sys.executable
        self.stop_timeout = stop_timeout
        self._lease = lease
        self._process: Optional[subprocess.Popen] = None

    @property
    def command(self) -> List[str]:
        return [self.python, "-m", "bletether", "watch", "--db", str(self.db_path), *self.extra_args]

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def lease(self) -> WatcherLease:
        if self._lease is None:
            self._lease = WatcherLease(SqlKeyValueStore(self.db_path))
        return self._lease

    def active_watcher(self) -> Optional[int]:
        """Pid of a watcher already running against this database."""
        try:
            return self.lease.holder()
        except StorageError as exc:
            logger.warning("Cannot read watcher pid: %s", exc)
            return None

    def start(self) -> None:
        if self.running:
            return
        holder = self.active_watcher()
        if holder is not None:
            logger.info("Background watcher already running (pid %s)", holder)
            return
        self._process = subprocess.Popen(self.command)
        logger.info("Background watcher launched (pid %s)", self._process.pid)

    def stop(self) -> None:
        proc = self._process
        self._process = None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        logger.info("Background watcher stopped (exit %s)", proc.returncode)


__all__ = ["AutostartAction", "AutostartHook", "ProcessWatcherControl"]
