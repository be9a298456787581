"""Wire radio, storage and tracker together for a process."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from bletether.config import resolve_db_path
from bletether.notifications import LogNotifier, Notifier
from bletether.radio import BleakRadio, Radio, RadioConfig
from bletether.storage import LogStore, PairingRegistry, SqlKeyValueStore
from bletether.tracker import ConnectionTracker, TrackerConfig, WatcherControl


def build_tracker(
    db_path: Optional[Union[str, Path]] = None,
    *,
    radio: Optional[Radio] = None,
    radio_config: Optional[RadioConfig] = None,
    config: Optional[TrackerConfig] = None,
    notifier: Optional[Notifier] = None,
    watcher_control: Optional[WatcherControl] = None,
) -> ConnectionTracker:
    """Tracker over the shared SQLite store and a bleak radio unless one is given."""
    store = SqlKeyValueStore(resolve_db_path(db_path))
    return ConnectionTracker(
        radio or BleakRadio(radio_config),
        PairingRegistry(store),
        LogStore(store),
        notifier=notifier if notifier is not None else LogNotifier(),
        watcher_control=watcher_control,
        config=config,
    )


__all__ = ["build_tracker"]
