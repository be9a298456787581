"""Headless watch loop that keeps scanning for paired devices."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Optional

from bletether.errors import RadioUnavailable, ScanFailure, StorageError
from bletether.notifications import STATUS_TITLE, WATCHING_STATUS, Notifier, notify_safely
from bletether.storage.lease import WatcherLease
from bletether.tracker import ConnectionTracker

logger = logging.getLogger(__name__)

WATCH_TAG = "[BG]"
STOP_NO_PAIRED = "no paired devices"
STOP_REQUESTED = "stop requested"
STOP_RUNTIME = "runtime elapsed"
STOP_ALREADY_RUNNING = "another watcher is running"


@dataclass(slots=True)
class WatcherConfig:
    """Timing for :class:`BackgroundWatcher`. All values are seconds."""

    interval: float = 30.0
    radio_backoff: float = 2.0
    max_radio_backoff: float = 60.0
    rescan_delay: float = 30.0

    def __post_init__(self) -> None:
        self.interval = max(0.01, self.interval)
        self.radio_backoff = max(0.01, self.radio_backoff)
        self.max_radio_backoff = max(self.radio_backoff, self.max_radio_backoff)
        self.rescan_delay = max(0.01, self.rescan_delay)


class BackgroundWatcher:
    """Re-arm scanning on a fixed cadence until the paired set is empty.

    The tracker does the connecting: each tick only makes sure a scan is
    running, so its discovery handler gets the chance to auto-connect.
    """

    def __init__(
        self,
        tracker: ConnectionTracker,
        *,
        config: Optional[WatcherConfig] = None,
        notifier: Optional[Notifier] = None,
        lease: Optional[WatcherLease] = None,
    ) -> None:
        self.tracker = tracker
        self.config = config or WatcherConfig()
        self.notifier = notifier
        self.lease = lease
        self.ticks = 0
        self.stop_reason: Optional[str] = None
        self._backoff = self.config.radio_backoff
        self._next_delay = self.config.interval
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    @property
    def next_delay(self) -> float:
        """Seconds the loop waits before the next tick."""
        return self._next_delay

    async def run(self, runtime: Optional[float] = None) -> str:
        """Watch until stopped; return why the loop ended."""
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self.stop_reason = None
        deadline = monotonic() + runtime if runtime else None

        if not await self._claim_lease():
            stop_event.set()
            self.stop_reason = STOP_ALREADY_RUNNING
            logger.info("Background watcher not started: %s", self.stop_reason)
            return self.stop_reason

        await self.tracker.start(scan=False)
        notify_safely(self.notifier, STATUS_TITLE, WATCHING_STATUS)
        logger.info("Background watcher started (interval=%.1fs)", self.config.interval)

        try:
            while not stop_event.is_set():
                if deadline and monotonic() >= deadline:
                    self.stop_reason = STOP_RUNTIME
                    break
                if not await self.tick():
                    break
                await self._sleep_with_stop(self._next_delay, stop_event, deadline)
        finally:
            stop_event.set()
            if self.stop_reason is None:
                self.stop_reason = STOP_REQUESTED
            await self.tracker.close()
            await self._release_lease()
            logger.info("Background watcher stopped: %s", self.stop_reason)
        return self.stop_reason

    async def tick(self) -> bool:
        """One watch cycle. Returns False when the loop must end."""
        self.ticks += 1
        try:
            paired = await self.tracker.refresh_paired()
        except StorageError as exc:
            logger.warning("Cannot read paired devices: %s", exc)
            self._next_delay = self.config.interval
            return True

        if not paired:
            logger.info("No paired devices stored; stopping watcher")
            self.stop_reason = STOP_NO_PAIRED
            try:
                await self.tracker.stop_scan()
            except ScanFailure as exc:
                logger.warning("Stopping scan failed: %s", exc)
            return False

        try:
            await self.tracker.ensure_scanning()
        except RadioUnavailable as exc:
            self._next_delay = self._backoff
            logger.warning("Bluetooth unavailable (%s); retrying in %.1fs", exc, self._next_delay)
            self._backoff = min(self._backoff * 2, self.config.max_radio_backoff)
            return True
        except ScanFailure as exc:
            self._next_delay = self.config.rescan_delay
            logger.warning("Scan failed (%s); rescanning in %.1fs", exc, self._next_delay)
            return True

        self._backoff = self.config.radio_backoff
        self._next_delay = self.config.interval
        logger.debug("Watching %d paired device(s)", len(paired))
        return True

    async def _claim_lease(self) -> bool:
        if self.lease is None:
            return True
        try:
            return await asyncio.to_thread(self.lease.claim)
        except StorageError as exc:
            logger.warning("Cannot record watcher pid: %s", exc)
            return True

    async def _release_lease(self) -> None:
        if self.lease is None:
            return
        try:
            await asyncio.to_thread(self.lease.release)
        except StorageError as exc:
            logger.warning("Cannot clear watcher pid: %s", exc)

    def request_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def _sleep_with_stop(
        self,
        duration: float,
        stop_event: asyncio.Event,
        deadline: Optional[float],
    ) -> None:
        if duration <= 0:
            return
        wait_time = duration
        if deadline:
            wait_time = min(wait_time, max(0.0, deadline - monotonic()))
            if wait_time <= 0:
                return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
        except asyncio.TimeoutError:
            pass


__all__ = [
    "BackgroundWatcher",
    "WatcherConfig",
    "WATCH_TAG",
    "STOP_NO_PAIRED",
    "STOP_REQUESTED",
    "STOP_RUNTIME",
    "STOP_ALREADY_RUNNING",
]
