"""Value types for bletether.

Log records are persisted verbatim; event types are the closed set of
messages exchanged between the radio, the tracker and its observers.
"""
from .events import (
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
    event_to_dict,
)
from .log_entry import LogDirection, LogEntry, LogKind, hex_payload, printable_text

__all__ = [
    "ConnectionEvent",
    "ConnectionState",
    "DiscoveryEvent",
    "LogAppended",
    "LogsCleared",
    "PairingChanged",
    "ScanResults",
    "ScanStatus",
    "StateChanged",
    "TrackerError",
    "TrackerEvent",
    "event_to_dict",
    "LogDirection",
    "LogEntry",
    "LogKind",
    "hex_payload",
    "printable_text",
]
