"""Per-device, retention-bounded BLE event log."""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Sequence, Set

from bletether.models.log_entry import LogEntry
from bletether.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

LOG_KEY_PREFIX = "ble_log_"
HARD_MAX_ENTRIES = 1000
MAX_AGE = timedelta(hours=24)
MIN_RETENTION = timedelta(minutes=30)


def log_key(device_id: str) -> str:
    return f"{LOG_KEY_PREFIX}{device_id}"


def _by_timestamp(entries: Iterable[LogEntry]) -> List[LogEntry]:
    return sorted(entries, key=lambda entry: entry.timestamp)


class LogStore:
    """Persisted per-device logs plus the in-memory mirror of this process.

    Persistence rules:

    * ``append`` keeps only the newest ``hard_max`` entries of a device, in
      insertion order.
    * ``load`` drops entries older than ``max_age`` but never anything from
      the last ``min_retention``.
    * Writes to one device are serialized; different devices never wait on
      each other.

    The in-memory mirror holds entries this process created (``remember``)
    and whatever ``refresh`` merged in from storage.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        hard_max: int = HARD_MAX_ENTRIES,
        max_age: timedelta = MAX_AGE,
        min_retention: timedelta = MIN_RETENTION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if hard_max <= 0:
            raise ValueError("hard_max must be positive")
        self.store = store
        self.hard_max = hard_max
        self.max_age = max_age
        self.min_retention = min_retention
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: Dict[str, List[LogEntry]] = {}
        self._cache_lock = threading.Lock()
        self._device_locks: Dict[str, threading.Lock] = {}
        self._async_locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------
    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = self._device_locks[device_id] = threading.Lock()
            return lock

    def _async_lock(self, device_id: str) -> asyncio.Lock:
        # FIFO waiters keep fire-and-forget appends in creation order.
        lock = self._async_locks.get(device_id)
        if lock is None:
            lock = self._async_locks[device_id] = asyncio.Lock()
        return lock

    def _prune(self, raw: List[str]) -> List[str]:
        if len(raw) > self.hard_max:
            return raw[-self.hard_max:]
        return raw

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def append(self, entry: LogEntry) -> None:
        encoded = entry.to_json()
        with self._device_lock(entry.device_id):
            self.store.update_list(log_key(entry.device_id), lambda raw: self._prune(raw + [encoded]))

    def append_many(self, entries: Iterable[LogEntry]) -> None:
        """Append a batch with one storage write per device."""
        by_device: Dict[str, List[str]] = {}
        for entry in entries:
            by_device.setdefault(entry.device_id, []).append(entry.to_json())
        for device_id, encoded in by_device.items():
            with self._device_lock(device_id):
                self.store.update_list(log_key(device_id), lambda raw, new=encoded: self._prune(raw + new))

    async def append_async(self, entry: LogEntry) -> None:
        async with self._async_lock(entry.device_id):
            await asyncio.to_thread(self.append, entry)

    def retention_cutoff(self, now: datetime | None = None) -> datetime:
        now = now or self.clock()
        return now - max(self.max_age, self.min_retention)

    def load(self, device_id: str) -> List[LogEntry]:
        raw = self.store.get_string_list(log_key(device_id)) or []
        cutoff = self.retention_cutoff()
        entries: List[LogEntry] = []
        skipped = 0
        for item in raw:
            try:
                entry = LogEntry.from_json(item)
            except ValueError:
                skipped += 1
                continue
            if entry.timestamp > cutoff:
                entries.append(entry)
        if skipped:
            logger.warning("skipped %d corrupted log entries for %s", skipped, device_id)
        return _by_timestamp(entries)

    async def load_async(self, device_id: str) -> List[LogEntry]:
        return await asyncio.to_thread(self.load, device_id)

    def entry_count(self, device_id: str) -> int:
        return len(self.store.get_string_list(log_key(device_id)) or [])

    def list_devices_with_logs(self) -> Set[str]:
        return {key[len(LOG_KEY_PREFIX):] for key in self.store.keys(LOG_KEY_PREFIX)}

    def clear(self, device_id: str) -> None:
        with self._device_lock(device_id):
            with self._cache_lock:
                self._cache.pop(device_id, None)
            self.store.remove(log_key(device_id))

    async def clear_async(self, device_id: str) -> None:
        async with self._async_lock(device_id):
            await asyncio.to_thread(self.clear, device_id)

    def clear_all(self) -> None:
        for device_id in self.list_devices_with_logs() | set(self.cached_devices()):
            self.clear(device_id)

    @staticmethod
    def merge(persisted: Sequence[LogEntry], in_memory: Sequence[LogEntry]) -> List[LogEntry]:
        """Union by entry id, then sort by timestamp."""
        merged = list(persisted)
        seen = {entry.id for entry in merged}
        for entry in in_memory:
            if entry.id not in seen:
                merged.append(entry)
                seen.add(entry.id)
        return _by_timestamp(merged)

    # ------------------------------------------------------------------
    # In-memory mirror
    # ------------------------------------------------------------------
    def remember(self, entry: LogEntry) -> None:
        with self._cache_lock:
            cached = self._cache.setdefault(entry.device_id, [])
            cached.append(entry)
            if len(cached) > self.hard_max:
                del cached[: len(cached) - self.hard_max]

    def cached(self, device_id: str) -> List[LogEntry]:
        with self._cache_lock:
            return list(self._cache.get(device_id, ()))

    def cached_devices(self) -> List[str]:
        with self._cache_lock:
            return list(self._cache)

    def all_cached(self) -> List[LogEntry]:
        with self._cache_lock:
            combined = [entry for entries in self._cache.values() for entry in entries]
        return _by_timestamp(combined)

    def refresh(self, device_id: str) -> List[LogEntry]:
        """Reload ``device_id`` from storage and merge in unflushed entries."""
        persisted = self.load(device_id)
        with self._cache_lock:
            merged = self.merge(persisted, self._cache.get(device_id, ()))
            self._cache[device_id] = merged
        return list(merged)

    async def refresh_async(self, device_id: str) -> List[LogEntry]:
        return await asyncio.to_thread(self.refresh, device_id)


__all__ = [
    "LogStore",
    "log_key",
    "LOG_KEY_PREFIX",
    "HARD_MAX_ENTRIES",
    "MAX_AGE",
    "MIN_RETENTION",
]
