"""Closed event types flowing between the radio, the tracker and observers."""
from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from .log_entry import LogEntry


class ConnectionState(str, Enum):
    """Per-device connection state tracked by :class:`ConnectionTracker`."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def _require_device_id(device_id: Any) -> None:
    if not isinstance(device_id, str) or not device_id:
        raise ValueError("device_id must be a non-empty string")


# ----------------------------------------------------------------------
# Radio events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DiscoveryEvent:
    """One advertisement seen during a scan."""

    device_id: str
    name: Optional[str] = None
    rssi: Optional[int] = None

    def __post_init__(self) -> None:
        _require_device_id(self.device_id)
        if self.rssi is not None and (isinstance(self.rssi, bool) or not isinstance(self.rssi, int)):
            raise ValueError("rssi must be an integer when provided")

    @property
    def label(self) -> str:
        return self.name or self.device_id


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Connection state change reported by the radio for any device."""

    device_id: str
    connected: bool
    error: Optional[str] = None

    def __post_init__(self) -> None:
        _require_device_id(self.device_id)
        if not isinstance(self.connected, bool):
            raise ValueError("connected must be a bool")


# ----------------------------------------------------------------------
# Tracker events (observable state)
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StateChanged:
    device_id: str
    previous: ConnectionState
    current: ConnectionState
    device_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ScanStatus:
    active: bool


@dataclass(frozen=True, slots=True)
class ScanResults:
    devices: Tuple[DiscoveryEvent, ...] = ()


@dataclass(frozen=True, slots=True)
class LogAppended:
    entry: LogEntry


@dataclass(frozen=True, slots=True)
class LogsCleared:
    device_id: str


@dataclass(frozen=True, slots=True)
class PairingChanged:
    device_id: str
    paired: bool
    paired_ids: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class TrackerError:
    message: str
    device_id: Optional[str] = None
    error_type: Optional[str] = None


TrackerEvent = Union[
    StateChanged,
    ScanStatus,
    ScanResults,
    LogAppended,
    LogsCleared,
    PairingChanged,
    TrackerError,
]


def _jsonable(value: Any) -> Any:
    if isinstance(value, LogEntry):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (frozenset, set)):
        return sorted(_jsonable(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def event_to_dict(event: TrackerEvent) -> Dict[str, Any]:
    """Flatten a tracker event into a JSON-ready mapping tagged by type."""
    payload: Dict[str, Any] = {"type": type(event).__name__}
    payload.update(_jsonable(event))
    return payload


__all__ = [
    "ConnectionState",
    "DiscoveryEvent",
    "ConnectionEvent",
    "StateChanged",
    "ScanStatus",
    "ScanResults",
    "LogAppended",
    "LogsCleared",
    "PairingChanged",
    "TrackerError",
    "TrackerEvent",
    "event_to_dict",
]
