"""BLE radio capability consumed by the tracker, with a bleak-based adapter."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from bletether.bus import Channel
from bletether.errors import ConnectionFailure, RadioError, RadioUnavailable, ScanFailure
from bletether.models.events import ConnectionEvent, DiscoveryEvent

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], Union[None, Awaitable[None]]]

_UNAVAILABLE_MARKERS = (
	"no bluetooth adapters",
	"adapter",
	"powered off",
	"turned off",
	"not available",
	"bluetooth is off",
)


def _is_unavailable(exc: BaseException) -> bool:
	text = str(exc).lower()
	return any(marker in text for marker in _UNAVAILABLE_MARKERS)


class Radio(Protocol):
	"""Radio primitives the tracker drives.

	``discoveries`` and ``connection_events`` are broadcast channels; the
	radio publishes on them and the tracker subscribes. ``connection_events``
	must report every connection change the platform sees, including ones the
	tracker did not start. Implementations may also offer
	``system_devices()`` returning devices already connected at OS level.
	"""

	discoveries: Channel[DiscoveryEvent]
	connection_events: Channel[ConnectionEvent]

	@property
	def is_scanning(self) -> bool: ...

	async def start_scan(self) -> None: ...

	async def stop_scan(self) -> None: ...

	async def connect(self, device_id: str) -> None: ...

	async def disconnect(self, device_id: str) -> None: ...

	async def pair(self, device_id: str) -> None: ...

	async def unpair(self, device_id: str) -> None: ...

	async def discover_services(self, device_id: str) -> List[str]: ...

	async def read(self, device_id: str, characteristic: str) -> bytes: ...

	async def write(self, device_id: str, characteristic: str, data: bytes, *, response: bool = True) -> None: ...

	async def subscribe(
		self,
		device_id: str,
		characteristic: str,
		callback: DataCallback,
		*,
		indications: bool = False,
	) -> None: ...

	async def unsubscribe(self, device_id: str, characteristic: str) -> None: ...


@dataclass(slots=True)
class RadioConfig:
	"""Configuration bundle used by :class:`BleakRadio`."""

	adapter: Optional[str] = None
	scanning_mode: Optional[str] = None
	service_uuids: Sequence[str] | None = None
	timeout: float = 10.0
	detection_kwargs: Dict[str, Any] = field(default_factory=dict)

	def scanner_kwargs(self) -> Dict[str, Any]:
		kwargs = dict(self.detection_kwargs)
		if self.service_uuids and "service_uuids" not in kwargs:
			kwargs["service_uuids"] = list(self.service_uuids)
		if self.adapter and "adapter" not in kwargs:
			kwargs["adapter"] = self.adapter
		if self.scanning_mode and "scanning_mode" not in kwargs:
			kwargs["scanning_mode"] = self.scanning_mode
		return kwargs

	def client_kwargs(self) -> Dict[str, Any]:
		kwargs: Dict[str, Any] = {"timeout": self.timeout}
		if self.adapter:
			kwargs["adapter"] = self.adapter
		return kwargs


class BleakRadio:
	"""Radio backed by :mod:`bleak` scanners and clients."""

	def __init__(self, config: RadioConfig | None = None) -> None:
		self.config = config or RadioConfig()
		self.discoveries: Channel[DiscoveryEvent] = Channel("discoveries")
		self.connection_events: Channel[ConnectionEvent] = Channel("connection-events")
		self._scanner: Optional[BleakScanner] = None
		self._scanning = False
		self._clients: Dict[str, BleakClient] = {}
		self._locks: Dict[str, asyncio.Lock] = {}
		self._scan_lock = asyncio.Lock()
		self._notify_tasks: set[asyncio.Task[Any]] = set()

	@property
	def is_scanning(self) -> bool:
		return self._scanning

	def _lock_for(self, device_id: str) -> asyncio.Lock:
		lock = self._locks.get(device_id)
		if lock is None:
			lock = self._locks[device_id] = asyncio.Lock()
		return lock

	# ------------------------------------------------------------------
	# Scanning
	# ------------------------------------------------------------------
	async def start_scan(self) -> None:
		async with self._scan_lock:
			if self._scanning:
				return
			scanner = BleakScanner(detection_callback=self._on_detection, **self.config.scanner_kwargs())
			try:
				await scanner.start()
			except BleakError as exc:
				if _is_unavailable(exc):
					raise RadioUnavailable(str(exc)) from exc
				raise ScanFailure(str(exc)) from exc
			except OSError as exc:  # pragma: no cover - platform specific
				raise RadioUnavailable(str(exc)) from exc
			self._scanner = scanner
			self._scanning = True
			logger.info("BLE scan started")

	async def stop_scan(self) -> None:
		async with self._scan_lock:
			scanner = self._scanner
			self._scanning = False
			self._scanner = None
			if scanner is None:
				return
			try:
				await scanner.stop()
			except BleakError as exc:
				raise ScanFailure(str(exc)) from exc
			logger.info("BLE scan stopped")

	def _on_detection(self, device: Any, advertisement: Any) -> None:
		if not self._scanning:
			return
		name = getattr(advertisement, "local_name", None) or getattr(device, "name", None) or None
		rssi = getattr(advertisement, "rssi", None)
		if rssi is None:
			rssi = getattr(device, "rssi", None)
		try:
			event = DiscoveryEvent(device_id=device.address, name=name, rssi=rssi)
		except ValueError:
			logger.debug("Ignoring malformed advertisement from %r", getattr(device, "address", None))
			return
		self.discoveries.publish(event)

	# ------------------------------------------------------------------
	# Connection lifecycle
	# ------------------------------------------------------------------
	async def connect(self, device_id: str) -> None:
		async with self._lock_for(device_id):
			client = self._clients.get(device_id)
			if client is not None and client.is_connected:
				return
			client = BleakClient(
				device_id,
				disconnected_callback=self._on_disconnected,
				**self.config.client_kwargs(),
			)
			try:
				await client.connect()
			except asyncio.CancelledError:
				with contextlib.suppress(Exception):
					await client.disconnect()
				raise
			except (BleakError, OSError, asyncio.TimeoutError) as exc:
				if isinstance(exc, BleakError) and _is_unavailable(exc):
					raise RadioUnavailable(str(exc), device_id=device_id) from exc
				raise ConnectionFailure(str(exc) or type(exc).__name__, device_id=device_id) from exc
			self._clients[device_id] = client
			logger.info("Connected to %s", device_id)

	async def disconnect(self, device_id: str) -> None:
		async with self._lock_for(device_id):
			client = self._clients.pop(device_id, None)
			if client is None:
				return
			try:
				await client.disconnect()
			except BleakError as exc:
				logger.warning("Disconnect encountered error for %s: %s", device_id, exc)
				raise RadioError(str(exc), device_id=device_id) from exc

	def _on_disconnected(self, client: Any) -> None:
		device_id = getattr(client, "address", None)
		if not device_id:
			return
		if self._clients.get(device_id) is client:
			self._clients.pop(device_id, None)
		self.connection_events.publish(ConnectionEvent(device_id=device_id, connected=False))

	async def close(self) -> None:
		with contextlib.suppress(RadioError):
			await self.stop_scan()
		for device_id in list(self._clients):
			with contextlib.suppress(RadioError):
				await self.disconnect(device_id)

	# ------------------------------------------------------------------
	# Pairing
	# ------------------------------------------------------------------
	async def pair(self, device_id: str) -> None:
		client = await self._client_for_pairing(device_id)
		try:
			await client.pair()
		except (BleakError, NotImplementedError) as exc:
			raise RadioError(f"pairing failed: {exc}", device_id=device_id) from exc

	async def unpair(self, device_id: str) -> None:
		client = self._clients.get(device_id) or BleakClient(device_id, **self.config.client_kwargs())
		try:
			await client.unpair()
		except (BleakError, NotImplementedError) as exc:
			raise RadioError(f"unpairing failed: {exc}", device_id=device_id) from exc

	async def _client_for_pairing(self, device_id: str) -> BleakClient:
		client = self._clients.get(device_id)
		if client is None or not client.is_connected:
			await self.connect(device_id)
			client = self._clients[device_id]
		return client

	# ------------------------------------------------------------------
	# GATT pass-through
	# ------------------------------------------------------------------
	def _require_client(self, device_id: str) -> BleakClient:
		client = self._clients.get(device_id)
		if client is None or not client.is_connected:
			raise ConnectionFailure("device is not connected", device_id=device_id)
		return client

	async def discover_services(self, device_id: str) -> List[str]:
		client = self._require_client(device_id)
		return [str(service.uuid) for service in client.services]

	async def read(self, device_id: str, characteristic: str) -> bytes:
		client = self._require_client(device_id)
		try:
			return bytes(await client.read_gatt_char(characteristic))
		except BleakError as exc:
			raise RadioError(str(exc), device_id=device_id) from exc

	async def write(self, device_id: str, characteristic: str, data: bytes, *, response: bool = True) -> None:
		client = self._require_client(device_id)
		try:
			await client.write_gatt_char(characteristic, data, response=response)
		except BleakError as exc:
			raise RadioError(str(exc), device_id=device_id) from exc

	async def subscribe(
		self,
		device_id: str,
		characteristic: str,
		callback: DataCallback,
		*,
		indications: bool = False,
	) -> None:
		# bleak picks notify vs indicate from the characteristic properties
		client = self._require_client(device_id)

		def _wrapped(_: Any, data: bytearray) -> None:
			try:
				outcome = callback(bytes(data))
				if asyncio.iscoroutine(outcome):
					task = asyncio.get_running_loop().create_task(outcome)
					self._notify_tasks.add(task)
					task.add_done_callback(self._notify_tasks.discard)
			except Exception:  # pragma: no cover - user callback failure
				logger.exception("Notification callback raised for %s", characteristic)

		try:
			await client.start_notify(characteristic, _wrapped)
		except BleakError as exc:
			raise RadioError(str(exc), device_id=device_id) from exc

	async def unsubscribe(self, device_id: str, characteristic: str) -> None:
		client = self._require_client(device_id)
		try:
			await client.stop_notify(characteristic)
		except BleakError as exc:
			raise RadioError(str(exc), device_id=device_id) from exc


__all__ = ["Radio", "RadioConfig", "BleakRadio", "DataCallback"]
