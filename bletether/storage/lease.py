"""Single-instance guard for the headless watcher, held in shared storage."""
from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from bletether.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

WATCHER_PID_KEY = "ble_watcher_pid"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    except OSError:
        return False
    return True


def _parse_pid(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("ignoring malformed watcher pid %r", value)
        return None


class WatcherLease:
    """Records which process runs the watcher.

    A lease whose holder is no longer alive is treated as free, so a watcher
    that crashed never blocks the next one.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        pid: Optional[int] = None,
        is_alive: Callable[[int], bool] = pid_alive,
        key: str = WATCHER_PID_KEY,
    ) -> None:
        self.store = store
        self.pid = pid if pid is not None else os.getpid()
        self.is_alive = is_alive
        self.key = key

    def holder(self) -> Optional[int]:
        """Pid of the live watcher, if any."""
        pid = _parse_pid(self.store.get_string(self.key))
        if pid is not None and self.is_alive(pid):
            return pid
        return None

    def claim(self) -> bool:
        claimed = False

        def _claim(current: Optional[str]) -> Optional[str]:
            nonlocal claimed
            holder = _parse_pid(current)
            if holder is not None and holder != self.pid and self.is_alive(holder):
                return current
            claimed = True
            return str(self.pid)

        self.store.update_string(self.key, _claim)
        if claimed:
            logger.debug("watcher lease claimed by pid %s", self.pid)
        return claimed

    def release(self) -> None:
        own = str(self.pid)
        self.store.update_string(self.key, lambda current: None if current == own else current)


__all__ = ["WatcherLease", "WATCHER_PID_KEY", "pid_alive"]
