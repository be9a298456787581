"""Immutable audit records for BLE protocol events."""
from __future__ import annotations

import json
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Callable, Dict, Mapping, Optional, Union

PRINTABLE_MIN = 0x20
PRINTABLE_MAX = 0x7E

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class LogDirection(IntEnum):
    """Who produced the logged data. Values are the persisted indices."""

    OUTGOING = 0
    INCOMING = 1
    SYSTEM = 2


class LogKind(IntEnum):
    """Event category. Values are the persisted indices."""

    SCAN = 0
    CONNECT = 1
    DISCONNECT = 2
    PAIR = 3
    UNPAIR = 4
    READ = 5
    WRITE = 6
    NOTIFY = 7
    INDICATE = 8
    SERVICE_DISCOVERY = 9
    ERROR = 10
    INFO = 11


_DIRECTION_LABELS: Dict[LogDirection, str] = {
    LogDirection.OUTGOING: "↑ OUT",
    LogDirection.INCOMING: "↓ IN ",
    LogDirection.SYSTEM: "● SYS",
}

_KIND_LABELS: Dict[LogKind, str] = {
    LogKind.SCAN: "SCAN",
    LogKind.CONNECT: "CONNECT",
    LogKind.DISCONNECT: "DISCONNECT",
    LogKind.PAIR: "PAIR",
    LogKind.UNPAIR: "UNPAIR",
    LogKind.READ: "READ",
    LogKind.WRITE: "WRITE",
    LogKind.NOTIFY: "NOTIFY",
    LogKind.INDICATE: "INDICATE",
    LogKind.SERVICE_DISCOVERY: "SERVICES",
    LogKind.ERROR: "ERROR",
    LogKind.INFO: "INFO",
}


class _EntryIdSource:
    """Mints ids that stay unique within one process and across processes.

    The numeric part is a microsecond wall clock that never repeats or goes
    backwards inside a process; the suffix is a random per-process tag.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0
        self._tag = secrets.token_hex(3)

    def next_id(self) -> str:
        with self._lock:
            now = time.time_ns() // 1000
            if now <= self._last:
                now = self._last + 1
            self._last = now
        return f"{now}-{self._tag}"


_ids = _EntryIdSource()


def next_entry_id() -> str:
    return _ids.next_id()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def _from_millis(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def _normalize_timestamp(dt: datetime) -> datetime:
    """UTC, truncated to whole milliseconds (the persisted precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=dt.microsecond - dt.microsecond % 1000)


def hex_payload(data: bytes) -> str:
    """Render bytes as space separated uppercase hex, e.g. ``0A 1B FF``."""
    return " ".join(f"{byte:02X}" for byte in data)


def printable_text(data: bytes) -> Optional[str]:
    """Decode ``data`` only when every byte is printable ASCII."""
    if not data:
        return None
    if all(PRINTABLE_MIN <= byte <= PRINTABLE_MAX for byte in data):
        return data.decode("ascii")
    return None


@dataclass(frozen=True, slots=True)
class LogEntry:
    """A single write-once protocol event for one device."""

    id: str
    timestamp: datetime
    device_id: str
    direction: LogDirection
    kind: LogKind
    message: str
    device_name: Optional[str] = None
    payload: Optional[bytes] = None
    payload_text: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.device_id, str) or not self.device_id:
            raise ValueError("device_id must be a non-empty string")
        if not isinstance(self.timestamp, datetime):
            raise TypeError("timestamp must be a datetime")
        object.__setattr__(self, "timestamp", _normalize_timestamp(self.timestamp))
        object.__setattr__(self, "direction", LogDirection(self.direction))
        object.__setattr__(self, "kind", LogKind(self.kind))
        if self.payload is not None:
            payload = bytes(self.payload)
            object.__setattr__(self, "payload", payload or None)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------
    @classmethod
    def system(
        cls,
        device_id: str,
        kind: LogKind,
        message: str,
        *,
        device_name: Optional[str] = None,
        direction: LogDirection = LogDirection.SYSTEM,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "LogEntry":
        return cls(
            id=next_entry_id(),
            timestamp=clock(),
            device_id=device_id,
            device_name=device_name,
            direction=direction,
            kind=kind,
            message=message,
        )

    @classmethod
    def data(
        cls,
        device_id: str,
        direction: LogDirection,
        kind: LogKind,
        message: str,
        payload: Union[bytes, bytearray, memoryview],
        *,
        device_name: Optional[str] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "LogEntry":
        raw = bytes(payload)
        return cls(
            id=next_entry_id(),
            timestamp=clock(),
            device_id=device_id,
            device_name=device_name,
            direction=direction,
            kind=kind,
            message=message,
            payload=raw or None,
            payload_text=printable_text(raw),
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    @property
    def hex_payload(self) -> Optional[str]:
        if not self.payload:
            return None
        return hex_payload(self.payload)

    @property
    def timestamp_ms(self) -> int:
        return _to_millis(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.timestamp_ms,
            "dId": self.device_id,
            "dName": self.device_name,
            "dir": int(self.direction),
            "type": int(self.kind),
            "msg": self.message,
            "hex": self.hex_payload,
            "ascii": self.payload_text,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LogEntry":
        """Rebuild an entry from its persisted record.

        Raises ``ValueError`` for any malformed record so callers can skip it.
        """
        try:
            hex_text = raw.get("hex")
            payload = bytes.fromhex(hex_text) if hex_text else None
            ts = raw["ts"]
            if isinstance(ts, bool) or not isinstance(ts, int):
                raise TypeError(f"ts must be an integer, got {type(ts).__name__}")
            identifier = raw["id"]
            message = raw["msg"]
            if not isinstance(identifier, str) or not isinstance(message, str):
                raise TypeError("id and msg must be strings")
            return cls(
                id=identifier,
                timestamp=_from_millis(ts),
                device_id=raw["dId"],
                device_name=raw.get("dName"),
                direction=LogDirection(raw["dir"]),
                kind=LogKind(raw["type"]),
                message=message,
                payload=payload,
                payload_text=raw.get("ascii"),
            )
        except (KeyError, TypeError, ValueError, OverflowError, AttributeError) as exc:
            raise ValueError(f"malformed log entry: {exc}") from exc

    @classmethod
    def from_json(cls, text: str) -> "LogEntry":
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"malformed log entry JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError("log entry JSON must be an object")
        return cls.from_dict(raw)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------
    @property
    def time_label(self) -> str:
        local = self.timestamp.astimezone()
        return local.strftime("%H:%M:%S.") + f"{local.microsecond // 1000:03d}"

    @property
    def direction_label(self) -> str:
        return _DIRECTION_LABELS[self.direction]

    @property
    def kind_label(self) -> str:
        return _KIND_LABELS[self.kind]


__all__ = [
    "LogDirection",
    "LogKind",
    "LogEntry",
    "hex_payload",
    "printable_text",
    "next_entry_id",
]
