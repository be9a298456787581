"""Persistence for the paired-device set and the per-device event logs."""
from .kv import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore
from .lease import WATCHER_PID_KEY, WatcherLease
from .logs import HARD_MAX_ENTRIES, LOG_KEY_PREFIX, LogStore, log_key
from .pairing import PAIRED_KEY, PairingRegistry

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqlKeyValueStore",
    "LogStore",
    "log_key",
    "LOG_KEY_PREFIX",
    "HARD_MAX_ENTRIES",
    "PairingRegistry",
    "PAIRED_KEY",
    "WatcherLease",
    "WATCHER_PID_KEY",
]
