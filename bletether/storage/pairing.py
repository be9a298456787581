"""Durable set of device identifiers the user has paired with."""
from __future__ import annotations

import logging
from typing import Set

from bletether.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

PAIRED_KEY = "ble_paired_devices"


class PairingRegistry:
    """Add/remove/query the paired set.

    Every call goes to storage; nothing is cached here, so a registry in the
    watcher process always sees what the foreground process committed.
    Storage failures propagate as :class:`~bletether.errors.StorageError`.
    """

    def __init__(self, store: KeyValueStore, *, key: str = PAIRED_KEY) -> None:
        self.store = store
        self.key = key

    def load_all(self) -> Set[str]:
        return set(self.store.get_string_set(self.key) or ())

    def is_paired(self, device_id: str) -> bool:
        return device_id in self.load_all()

    def add_paired(self, device_id: str) -> None:
        if not device_id:
            raise ValueError("device_id must be a non-empty string")
        ids = self.store.update_set(self.key, lambda current: current | {device_id})
        logger.debug("paired %s (%d stored)", device_id, len(ids))

    def remove_paired(self, device_id: str) -> None:
        ids = self.store.update_set(self.key, lambda current: current - {device_id})
        logger.debug("unpaired %s (%d stored)", device_id, len(ids))

    def clear_all(self) -> None:
        self.store.remove(self.key)
        logger.info("cleared all paired devices")


__all__ = ["PairingRegistry", "PAIRED_KEY"]
