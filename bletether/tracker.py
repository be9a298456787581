"""Auto-reconnect state tracker for paired BLE devices."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Protocol, Set

from bletether.bus import Channel, Subscription
from bletether.errors import (
    BletetherError,
    ConnectionFailure,
    RadioUnavailable,
    ScanFailure,
    StorageError,
)
from bletether.models.events import (
    ConnectionEvent,
    ConnectionState,
    DiscoveryEvent,
    LogAppended,
    LogsCleared,
    PairingChanged,
    ScanResults,
    ScanStatus,
    StateChanged,
    TrackerError,
    TrackerEvent,
)
from bletether.models.log_entry import LogDirection, LogEntry, LogKind
from bletether.notifications import STATUS_TITLE, WATCHING_STATUS, Notifier, notify_safely
from bletether.radio import Radio
from bletether.storage.logs import LogStore
from bletether.storage.pairing import PairingRegistry

logger = logging.getLogger(__name__)

# Log stream for radio-wide events that belong to no single device.
RADIO_LOG_ID = "radio"

_ACTIVE = frozenset({ConnectionState.CONNECTING, ConnectionState.CONNECTED})


@dataclass(slots=True)
class TrackerConfig:
    """Configuration bundle for :class:`ConnectionTracker`."""

    connect_timeout: float = 15.0
    rescan_on_disconnect: bool = True
    bond_on_pair: bool = True
    source_tag: Optional[str] = None

    def __post_init__(self) -> None:
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")


class WatcherControl(Protocol):
    """Starts/stops the background watcher when the paired set changes."""

    def start(self) -> None: ...

    def stop(self) -> None: ...


class ConnectionStateTable:
    """Per-device connection states, mutated only through these methods.

    All check-and-set operations run under one lock so concurrent discovery
    events can never both claim the same device.
    """

    def __init__(self) -> None:
        self._states: Dict[str, ConnectionState] = {}
        self._lock = threading.Lock()

    def get(self, device_id: str) -> ConnectionState:
        with self._lock:
            return self._states.get(device_id, ConnectionState.IDLE)

    def snapshot(self) -> Dict[str, ConnectionState]:
        with self._lock:
            return dict(self._states)

    def set(self, device_id: str, state: ConnectionState) -> ConnectionState:
        """Force ``state`` and return the previous one."""
        with self._lock:
            previous = self._states.get(device_id, ConnectionState.IDLE)
            self._states[device_id] = state
            return previous

    def transition(
        self,
        device_id: str,
        state: ConnectionState,
        *,
        expected: Iterable[ConnectionState],
    ) -> Optional[ConnectionState]:
        """Move to ``state`` only from one of ``expected``; return the previous state or None."""
        allowed = frozenset(expected)
        with self._lock:
            previous = self._states.get(device_id, ConnectionState.IDLE)
            if previous not in allowed:
                return None
            self._states[device_id] = state
            return previous

    def is_active(self, device_id: str) -> bool:
        return self.get(device_id) in _ACTIVE

    def reset(self, device_id: Optional[str] = None) -> None:
        with self._lock:
            if device_id is None:
                self._states.clear()
            else:
                self._states.pop(device_id, None)


class ConnectionTracker:
    """Turn radio events into connection decisions, logs and observable events.

    Paired devices are connected as soon as a scan sees them, at most one
    attempt at a time per device. Every transition is written to the
    :class:`LogStore` (in memory immediately, on disk in the background) and
    published on :attr:`events`.
    """

    def __init__(
        self,
        radio: Radio,
        registry: PairingRegistry,
        logs: LogStore,
        *,
        notifier: Optional[Notifier] = None,
        watcher_control: Optional[WatcherControl] = None,
        config: Optional[TrackerConfig] = None,
    ) -> None:
        self.radio = radio
        self.registry = registry
        self.logs = logs
        self.notifier = notifier
        self.watcher_control = watcher_control
        self.config = config or TrackerConfig()
        self.events: Channel[TrackerEvent] = Channel("tracker-events")
        self.states = ConnectionStateTable()

        self._paired: Set[str] = set()
        self._names: Dict[str, Optional[str]] = {}
        self._discovered: Dict[str, DiscoveryEvent] = {}
        self._discovery_sub: Optional[Subscription[DiscoveryEvent]] = None
        self._connection_sub: Optional[Subscription[ConnectionEvent]] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._connect_tasks: Set["asyncio.Task[Any]"] = set()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def paired_ids(self) -> Set[str]:
        return set(self._paired)

    @property
    def discovered_devices(self) -> List[DiscoveryEvent]:
        return list(self._discovered.values())

    @property
    def is_scanning(self) -> bool:
        return self._discovery_sub is not None and self.radio.is_scanning

    def state_of(self, device_id: str) -> ConnectionState:
        return self.states.get(device_id)

    def logs_for(self, device_id: str) -> List[LogEntry]:
        return self.logs.cached(device_id)

    @property
    def all_logs(self) -> List[LogEntry]:
        return self.logs.all_cached()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, *, scan: bool = True) -> None:
        """Load the paired set, follow global connection changes, optionally scan."""
        if self._started:
            return
        self._started = True
        self._closed = False
        await self.refresh_paired()
        self._connection_sub = self.radio.connection_events.subscribe(self._on_connection_event)
        if scan:
            try:
                await self.ensure_scanning()
            except (RadioUnavailable, ScanFailure):
                pass
            await self.check_system_devices()

    async def close(self) -> None:
        self._closed = True
        self._started = False
        if self._connection_sub is not None:
            self._connection_sub.cancel()
            self._connection_sub = None
        try:
            await self.stop_scan()
        except ScanFailure as exc:
            logger.warning("stop scan failed during close: %s", exc)
        for task in list(self._connect_tasks):
            task.cancel()
        await self.flush()
        release = getattr(self.radio, "close", None)
        if release is not None:
            try:
                await release()
            except BletetherError as exc:
                logger.warning("closing the radio failed: %s", exc)

    async def flush(self) -> None:
        """Wait for background work (log persistence, connect attempts)."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def refresh_paired(self) -> Set[str]:
        """Re-read the paired set from storage; storage is ground truth."""
        self._paired = await asyncio.to_thread(self.registry.load_all)
        return set(self._paired)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------
    async def ensure_scanning(self) -> None:
        """Start scanning unless already active.

        Radio errors are logged and published, then re-raised so a caller
        can schedule its retry.
        """
        if self._discovery_sub is None:
            self._discovered.clear()
            self._discovery_sub = self.radio.discoveries.subscribe(self._on_discovery)
        if self.radio.is_scanning:
            return
        try:
            await self.radio.start_scan()
        except (RadioUnavailable, ScanFailure) as exc:
            self._report_error(RADIO_LOG_ID, None, f"BLE scan failed: {exc}", exc)
            raise
        self.events.publish(ScanStatus(active=True))

    async def restart_scan(self) -> None:
        """Forget the current scan results and scan again."""
        if self._discovery_sub is not None:
            self._discovery_sub.cancel()
            self._discovery_sub = None
        await self.ensure_scanning()

    async def stop_scan(self) -> None:
        if self._discovery_sub is not None:
            self._discovery_sub.cancel()
            self._discovery_sub = None
        if not self.radio.is_scanning:
            return
        try:
            await self.radio.stop_scan()
        except ScanFailure as exc:
            self._report_error(RADIO_LOG_ID, None, f"BLE scan stop failed: {exc}", exc)
            raise
        self.events.publish(ScanStatus(active=False))

    async def _rearm_scan(self) -> None:
        if self._closed or not self.config.rescan_on_disconnect:
            return
        try:
            await self.ensure_scanning()
        except (RadioUnavailable, ScanFailure):
            logger.info("rescan after disconnect failed; the watcher will retry")

    # ------------------------------------------------------------------
    # Radio event handlers (must return promptly)
    # ------------------------------------------------------------------
    def _on_discovery(self, event: DiscoveryEvent) -> None:
        if self._closed:
            return
        device_id = event.device_id
        if event.name:
            self._names[device_id] = event.name
        is_new = device_id not in self._discovered
        self._discovered[device_id] = event
        if is_new:
            self.events.publish(ScanResults(devices=tuple(self._discovered.values())))
            rssi = f" — RSSI {event.rssi} dBm" if event.rssi is not None else ""
            self._log(
                LogEntry.system(
                    device_id,
                    LogKind.SCAN,
                    self._tagged(f'Discovered: "{event.name or "Unknown"}"{rssi}'),
                    device_name=event.name,
                    clock=self.logs.clock,
                )
            )

        if device_id not in self._paired:
            return
        if self.states.is_active(device_id):
            return

        previous = self.states.transition(
            device_id,
            ConnectionState.DISCOVERING,
            expected=(ConnectionState.IDLE, ConnectionState.DISCONNECTED),
        )
        if previous is not None:
            self._publish_state(device_id, previous, ConnectionState.DISCOVERING)
        claimed = self.states.transition(
            device_id,
            ConnectionState.CONNECTING,
            expected=(ConnectionState.DISCOVERING,),
        )
        if claimed is None:
            return
        self._publish_state(device_id, claimed, ConnectionState.CONNECTING)
        logger.info("Auto-connecting to paired device %s", device_id)
        self._spawn(self._connect(device_id, event.name), kind="connect")

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if self._closed:
            return
        device_id = event.device_id
        name = self._names.get(device_id)
        if event.connected:
            previous = self.states.set(device_id, ConnectionState.CONNECTED)
            if previous == ConnectionState.CONNECTED:
                return
            self._publish_state(device_id, previous, ConnectionState.CONNECTED)
            suffix = f" ({event.error})" if event.error else ""
            self._log(self._system(device_id, LogKind.CONNECT, f"Connected{suffix}", direction=LogDirection.INCOMING))
            notify_safely(self.notifier, "Device Connected", f"Connected: {name or device_id}")
            return

        previous = self.states.set(device_id, ConnectionState.DISCONNECTED)
        if previous == ConnectionState.DISCONNECTED:
            return
        self._publish_state(device_id, previous, ConnectionState.DISCONNECTED)
        message = f"Disconnected — {event.error}" if event.error else "Disconnected"
        self._log(self._system(device_id, LogKind.DISCONNECT, message))
        if previous in _ACTIVE:
            notify_safely(self.notifier, "Device Disconnected", f"Lost connection to {name or device_id}")
        if self.config.source_tag:
            notify_safely(self.notifier, STATUS_TITLE, WATCHING_STATUS)
        self._spawn(self._rearm_scan(), kind="rescan")

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------
    async def _connect(self, device_id: str, name: Optional[str]) -> None:
        label = name or device_id
        self._log(self._system(device_id, LogKind.INFO, f'Connecting to "{label}"…'))
        try:
            await asyncio.wait_for(self.radio.connect(device_id), timeout=self.config.connect_timeout)
        except asyncio.CancelledError:
            self.states.transition(device_id, ConnectionState.IDLE, expected=(ConnectionState.CONNECTING,))
            raise
        except asyncio.TimeoutError:
            failure = ConnectionFailure(
                f"timed out after {self.config.connect_timeout:g}s", device_id=device_id
            )
            self._connect_failed(device_id, failure)
            return
        except Exception as exc:
            self._connect_failed(device_id, exc)
            return

        previous = self.states.transition(device_id, ConnectionState.CONNECTED, expected=(ConnectionState.CONNECTING,))
        if previous is None:
            # a connection event already settled this attempt
            return
        self._publish_state(device_id, previous, ConnectionState.CONNECTED)
        self._log(self._system(device_id, LogKind.CONNECT, f'Connected to "{label}"', direction=LogDirection.INCOMING))
        notify_safely(self.notifier, "Device Connected", f"Connected: {label}")

    def _connect_failed(self, device_id: str, exc: BaseException) -> None:
        previous = self.states.transition(
            device_id,
            ConnectionState.DISCONNECTED,
            expected=(ConnectionState.CONNECTING,),
        )
        if previous is not None:
            self._publish_state(device_id, previous, ConnectionState.DISCONNECTED)
        self._report_error(device_id, self._names.get(device_id), f"Connection failed: {exc}", exc)
        self._spawn(self._rearm_scan(), kind="rescan")

    async def connect(self, device_id: str) -> bool:
        """Connect on request, honouring the same single-attempt guard."""
        previous = self.states.transition(
            device_id,
            ConnectionState.CONNECTING,
            expected=(ConnectionState.IDLE, ConnectionState.DISCOVERING, ConnectionState.DISCONNECTED),
        )
        if previous is None:
            return self.states.get(device_id) == ConnectionState.CONNECTED
        self._publish_state(device_id, previous, ConnectionState.CONNECTING)
        await self._connect(device_id, self._names.get(device_id))
        return self.states.get(device_id) == ConnectionState.CONNECTED

    async def disconnect(self, device_id: str) -> None:
        """User-initiated disconnect."""
        try:
            await self.radio.disconnect(device_id)
        except BletetherError as exc:
            self._report_error(device_id, self._names.get(device_id), f"Disconnect failed: {exc}", exc)
            return
        previous = self.states.set(device_id, ConnectionState.DISCONNECTED)
        if previous != ConnectionState.DISCONNECTED:
            self._publish_state(device_id, previous, ConnectionState.DISCONNECTED)
            self._log(self._system(device_id, LogKind.DISCONNECT, "Disconnected (user initiated)"))

    async def check_system_devices(self) -> None:
        """Log devices the OS already holds connected; they never show up in a scan."""
        query = getattr(self.radio, "system_devices", None)
        if query is None:
            return
        try:
            devices = await query()
        except Exception as exc:
            logger.debug("system device query unsupported: %s", exc)
            return
        for device in devices:
            if device.name:
                self._names[device.device_id] = device.name
            self._discovered.setdefault(device.device_id, device)
            previous = self.states.set(device.device_id, ConnectionState.CONNECTED)
            if previous != ConnectionState.CONNECTED:
                self._publish_state(device.device_id, previous, ConnectionState.CONNECTED)
            self._log(
                self._system(
                    device.device_id,
                    LogKind.CONNECT,
                    "Already connected (system/OS paired device)",
                )
            )
        if devices:
            self.events.publish(ScanResults(devices=tuple(self._discovered.values())))

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------
    async def pair(self, device_id: str, *, name: Optional[str] = None) -> bool:
        if name:
            self._names[device_id] = name
        label = self._names.get(device_id) or device_id
        self._log(self._system(device_id, LogKind.PAIR, f'Pairing requested with "{label}"…'))
        try:
            if self.config.bond_on_pair:
                await self.radio.pair(device_id)
            await asyncio.to_thread(self.registry.add_paired, device_id)
            await self.refresh_paired()
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Pair failed: {exc}", exc)
            return False
        self._log(self._system(device_id, LogKind.PAIR, "Paired successfully & saved to storage"))
        notify_safely(self.notifier, "Device Paired", f"Successfully paired with {label}")
        await self._control_watcher(start=True)
        self.events.publish(PairingChanged(device_id, True, frozenset(self._paired)))
        return True

    async def unpair(self, device_id: str) -> bool:
        label = self._names.get(device_id) or device_id
        self._log(self._system(device_id, LogKind.UNPAIR, f'Unpair requested for "{label}"…'))
        try:
            if self.config.bond_on_pair:
                await self.radio.unpair(device_id)
            await asyncio.to_thread(self.registry.remove_paired, device_id)
            await self.refresh_paired()
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Unpair failed: {exc}", exc)
            return False
        self._log(self._system(device_id, LogKind.UNPAIR, "Unpaired & removed from storage"))
        if not self._paired:
            await self._control_watcher(start=False)
        self.events.publish(PairingChanged(device_id, False, frozenset(self._paired)))
        return True

    async def _control_watcher(self, *, start: bool) -> None:
        if self.watcher_control is None:
            return
        action = self.watcher_control.start if start else self.watcher_control.stop
        try:
            await asyncio.to_thread(action)
        except Exception as exc:
            logger.warning("background watcher %s failed: %s", "start" if start else "stop", exc)

    # ------------------------------------------------------------------
    # GATT pass-through with logging
    # ------------------------------------------------------------------
    async def discover_services(self, device_id: str) -> List[str]:
        try:
            services = await self.radio.discover_services(device_id)
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Service discovery failed: {exc}", exc)
            return []
        self._log(
            self._system(
                device_id,
                LogKind.SERVICE_DISCOVERY,
                f"Discovered {len(services)} service(s): {', '.join(services)}",
            )
        )
        return services

    async def read(self, device_id: str, characteristic: str) -> Optional[bytes]:
        try:
            data = await self.radio.read(device_id, characteristic)
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Read failed: {exc}", exc)
            return None
        self._log(
            self._data(device_id, LogDirection.INCOMING, LogKind.READ, f"Read from {characteristic}", data)
        )
        return data

    async def write(self, device_id: str, characteristic: str, data: bytes, *, response: bool = True) -> bool:
        try:
            await self.radio.write(device_id, characteristic, data, response=response)
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Write failed: {exc}", exc)
            return False
        mode = "with response" if response else "no response"
        self._log(
            self._data(device_id, LogDirection.OUTGOING, LogKind.WRITE, f"Write ({mode}) to {characteristic}", data)
        )
        return True

    async def subscribe(self, device_id: str, characteristic: str, *, indications: bool = False) -> bool:
        kind = LogKind.INDICATE if indications else LogKind.NOTIFY
        label = "Indication" if indications else "Notification"

        def _on_data(data: bytes) -> None:
            if self._closed:
                return
            self._log(self._data(device_id, LogDirection.INCOMING, kind, f"{label} from {characteristic}", data))

        try:
            await self.radio.subscribe(device_id, characteristic, _on_data, indications=indications)
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Subscribe failed: {exc}", exc)
            return False
        what = "indications" if indications else "notifications"
        self._log(self._system(device_id, LogKind.INFO, f"Subscribed to {what} on {characteristic}"))
        return True

    async def unsubscribe(self, device_id: str, characteristic: str) -> bool:
        try:
            await self.radio.unsubscribe(device_id, characteristic)
        except Exception as exc:
            self._report_error(device_id, self._names.get(device_id), f"Unsubscribe failed: {exc}", exc)
            return False
        self._log(self._system(device_id, LogKind.INFO, f"Unsubscribed from {characteristic}"))
        return True

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    async def load_device_logs(self, device_id: str) -> List[LogEntry]:
        return await self.logs.refresh_async(device_id)

    async def load_all_logs(self) -> List[LogEntry]:
        """Rebuild the all-devices view from storage after a cold start."""
        device_ids = await asyncio.to_thread(self.logs.list_devices_with_logs)
        await asyncio.gather(*(self.load_device_logs(device_id) for device_id in device_ids))
        return self.all_logs

    async def clear_logs(self, device_id: str) -> None:
        await self.logs.clear_async(device_id)
        self.events.publish(LogsCleared(device_id))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _tagged(self, message: str) -> str:
        if self.config.source_tag:
            return f"{self.config.source_tag} {message}"
        return message

    def _system(
        self,
        device_id: str,
        kind: LogKind,
        message: str,
        *,
        direction: LogDirection = LogDirection.SYSTEM,
    ) -> LogEntry:
        return LogEntry.system(
            device_id,
            kind,
            self._tagged(message),
            device_name=self._names.get(device_id),
            direction=direction,
            clock=self.logs.clock,
        )

    def _data(self, device_id: str, direction: LogDirection, kind: LogKind, message: str, data: bytes) -> LogEntry:
        return LogEntry.data(
            device_id,
            direction,
            kind,
            self._tagged(message),
            data,
            device_name=self._names.get(device_id),
            clock=self.logs.clock,
        )

    def _log(self, entry: LogEntry) -> None:
        """Mirror in memory and publish now; persist on a background task."""
        self.logs.remember(entry)
        self.events.publish(LogAppended(entry))
        self._spawn(self._persist(entry), kind="persist")

    async def _persist(self, entry: LogEntry) -> None:
        try:
            await self.logs.append_async(entry)
        except StorageError as exc:
            logger.warning("Persisting log entry for %s failed: %s", entry.device_id, exc)
            self.events.publish(
                TrackerError(f"Log persistence failed: {exc}", device_id=entry.device_id, error_type="StorageError")
            )

    def _report_error(self, device_id: str, name: Optional[str], message: str, exc: BaseException) -> None:
        logger.warning("%s: %s", device_id, message)
        self._log(
            LogEntry.system(
                device_id,
                LogKind.ERROR,
                self._tagged(message),
                device_name=name,
                clock=self.logs.clock,
            )
        )
        self.events.publish(TrackerError(message, device_id=device_id, error_type=type(exc).__name__))

    def _publish_state(self, device_id: str, previous: ConnectionState, current: ConnectionState) -> None:
        self.events.publish(StateChanged(device_id, previous, current, self._names.get(device_id)))

    def _spawn(self, coro: Awaitable[Any], *, kind: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("no running event loop; dropping %s task", kind)
            coro.close()  # type: ignore[attr-defined]
            return
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        if kind == "connect":
            self._connect_tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        self._connect_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("tracker task failed: %s", exc, exc_info=exc)


__all__ = [
    "ConnectionTracker",
    "ConnectionStateTable",
    "TrackerConfig",
    "WatcherControl",
    "RADIO_LOG_ID",
]
