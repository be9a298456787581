"""Simulation tests for the connection tracker using a scripted radio."""
from __future__ import annotations

import asyncio
import unittest
from typing import Any, List, Optional

from fakes import DEVICE, OTHER_DEVICE, FailingListStore, FakeRadio, FakeWatcherControl

from bletether.errors import ConnectionFailure, RadioError, RadioUnavailable
from bletether.models import (
    ConnectionState,
    DiscoveryEvent,
    LogDirection,
    LogKind,
    LogsCleared,
    PairingChanged,
    TrackerError,
)
from bletether.notifications import WATCHING_STATUS, RecordingNotifier
from bletether.storage import LogStore, MemoryKeyValueStore, PairingRegistry
from bletether.tracker import RADIO_LOG_ID, ConnectionStateTable, ConnectionTracker, TrackerConfig


class TrackerTestCase(unittest.IsolatedAsyncioTestCase):
    tracker: Optional[ConnectionTracker] = None

    def _build(
        self,
        *,
        store: Any = None,
        control: Optional[FakeWatcherControl] = None,
        **config: Any,
    ) -> ConnectionTracker:
        self.radio = FakeRadio()
        self.store = store if store is not None else MemoryKeyValueStore()
        self.registry = PairingRegistry(self.store)
        self.logs = LogStore(self.store)
        self.notifier = RecordingNotifier()
        self.tracker = ConnectionTracker(
            self.radio,
            self.registry,
            self.logs,
            notifier=self.notifier,
            watcher_control=control,
            config=TrackerConfig(**config),
        )
        self.events: List[Any] = []
        self.tracker.events.subscribe(self.events.append)
        return self.tracker

    async def asyncTearDown(self) -> None:
        if self.tracker is not None:
            await self.tracker.close()

    def _kinds(self, device_id: str, kind: LogKind):
        return [entry for entry in self.tracker.logs_for(device_id) if entry.kind == kind]


class AutoConnectTest(TrackerTestCase):
    async def test_double_discovery_yields_single_connect_attempt(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        self.radio.connect_gate = asyncio.Event()
        await tracker.start()

        self.radio.advertise(DEVICE)
        self.radio.advertise(DEVICE)
        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTING)

        self.radio.connect_gate.set()
        await tracker.flush()

        self.assertEqual(self.radio.connect_calls, [DEVICE])
        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTED)
        self.assertEqual(len(self._kinds(DEVICE, LogKind.CONNECT)), 1)
        persisted = [entry for entry in self.logs.load(DEVICE) if entry.kind == LogKind.CONNECT]
        self.assertEqual(len(persisted), 1)
        self.assertEqual(persisted[0].message, 'Connected to "Tag"')
        self.assertIn(("Device Connected", "Connected: Tag"), self.notifier.messages)

    async def test_explicit_connect_respects_in_flight_attempt(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        self.radio.connect_gate = asyncio.Event()
        await tracker.start()
        self.radio.advertise(DEVICE)

        self.assertFalse(await tracker.connect(DEVICE))

        self.radio.connect_gate.set()
        await tracker.flush()
        self.assertEqual(self.radio.connect_calls, [DEVICE])

    async def test_unpaired_device_is_logged_once_and_never_connected(self) -> None:
        tracker = self._build()
        await tracker.start()

        self.radio.advertise(OTHER_DEVICE, name="Stranger", rssi=-70)
        self.radio.advertise(OTHER_DEVICE, name="Stranger", rssi=-71)
        await tracker.flush()

        self.assertEqual(self.radio.connect_calls, [])
        self.assertEqual(tracker.state_of(OTHER_DEVICE), ConnectionState.IDLE)
        scans = self._kinds(OTHER_DEVICE, LogKind.SCAN)
        self.assertEqual(len(scans), 1)
        self.assertEqual(scans[0].message, 'Discovered: "Stranger" — RSSI -70 dBm')
        self.assertEqual([event.rssi for event in tracker.discovered_devices], [-71])

    async def test_close_releases_radio_connections(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        await tracker.start()
        self.radio.advertise(DEVICE)
        await tracker.flush()
        self.assertEqual(self.radio.connected, {DEVICE})

        await tracker.close()

        self.assertEqual(self.radio.close_calls, 1)
        self.assertEqual(self.radio.connected, set())
        self.assertFalse(self.radio.scanning)

    async def test_connect_timeout_releases_guard(self) -> None:
        tracker = self._build(connect_timeout=0.05)
        self.registry.add_paired(DEVICE)
        self.radio.connect_gate = asyncio.Event()
        await tracker.start()

        self.radio.advertise(DEVICE)
        await tracker.flush()

        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.DISCONNECTED)
        errors = self._kinds(DEVICE, LogKind.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertIn("timed out", errors[0].message)

        self.radio.advertise(DEVICE)
        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTING)
        self.radio.connect_gate.set()
        await tracker.flush()

        self.assertEqual(self.radio.connect_calls, [DEVICE, DEVICE])
        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTED)

    async def test_connect_failure_logs_error_and_publishes_event(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        self.radio.connect_error = ConnectionFailure("refused", device_id=DEVICE)
        await tracker.start()

        self.radio.advertise(DEVICE)
        await tracker.flush()

        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.DISCONNECTED)
        errors = self._kinds(DEVICE, LogKind.ERROR)
        self.assertEqual([entry.message for entry in errors], ["Connection failed: refused"])
        failures = [event for event in self.events if isinstance(event, TrackerError)]
        self.assertEqual(failures[-1].error_type, "ConnectionFailure")
        self.assertEqual(self._kinds(DEVICE, LogKind.CONNECT), [])

    async def test_source_tag_prefixes_messages(self) -> None:
        tracker = self._build(source_tag="[BG]")
        await tracker.start()

        self.radio.advertise(OTHER_DEVICE)
        await tracker.flush()

        scans = self._kinds(OTHER_DEVICE, LogKind.SCAN)
        self.assertEqual(scans[0].message, '[BG] Discovered: "Tag" — RSSI -60 dBm')


class GlobalConnectionEventsTest(TrackerTestCase):
    async def test_external_connection_changes_are_tracked(self) -> None:
        tracker = self._build()
        await tracker.start()

        self.radio.link_up(OTHER_DEVICE)
        self.radio.link_up(OTHER_DEVICE)
        self.assertEqual(tracker.state_of(OTHER_DEVICE), ConnectionState.CONNECTED)
        connects = self._kinds(OTHER_DEVICE, LogKind.CONNECT)
        self.assertEqual(len(connects), 1)
        self.assertEqual(connects[0].direction, LogDirection.INCOMING)

        self.radio.scanning = False
        self.radio.link_lost(OTHER_DEVICE, error="link timeout")
        await tracker.flush()

        self.assertEqual(tracker.state_of(OTHER_DEVICE), ConnectionState.DISCONNECTED)
        drops = self._kinds(OTHER_DEVICE, LogKind.DISCONNECT)
        self.assertEqual([entry.message for entry in drops], ["Disconnected — link timeout"])
        self.assertIn(("Device Disconnected", f"Lost connection to {OTHER_DEVICE}"), self.notifier.messages)
        self.assertEqual(self.radio.start_scan_calls, 2)
        self.assertNotIn(("BLE Monitor", WATCHING_STATUS), self.notifier.messages)

    async def test_paired_device_reconnects_after_drop(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        await tracker.start()
        self.radio.advertise(DEVICE)
        await tracker.flush()

        self.radio.link_lost(DEVICE)
        await tracker.flush()
        self.radio.advertise(DEVICE)
        await tracker.flush()

        self.assertEqual(self.radio.connect_calls, [DEVICE, DEVICE])
        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTED)

    async def test_system_devices_are_logged_as_connected(self) -> None:
        tracker = self._build()
        self.radio.system = [DiscoveryEvent(DEVICE, name="Watch")]
        await tracker.start()

        self.assertEqual(tracker.state_of(DEVICE), ConnectionState.CONNECTED)
        entries = self._kinds(DEVICE, LogKind.CONNECT)
        self.assertEqual(entries[0].message, "Already connected (system/OS paired device)")
        self.assertEqual(entries[0].device_name, "Watch")

    async def test_events_after_close_are_ignored(self) -> None:
        tracker = self._build()
        self.registry.add_paired(DEVICE)
        await tracker.start()
        await tracker.close()

        self.radio.advertise(DEVICE)
        self.radio.link_up(OTHER_DEVICE)

        self.assertEqual(self.radio.connect_calls, [])
        self.assertEqual(tracker.state_of(OTHER_DEVICE), ConnectionState.IDLE)


class ScanErrorTest(TrackerTestCase):
    async def test_unavailable_radio_is_logged_and_reraised(self) -> None:
        tracker = self._build()
        await tracker.start(scan=False)
        self.radio.scan_errors = [RadioUnavailable("adapter powered off")]

        with self.assertRaises(RadioUnavailable):
            await tracker.ensure_scanning()

        errors = self._kinds(RADIO_LOG_ID, LogKind.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertIn("adapter powered off", errors[0].message)

    async def test_start_survives_unavailable_radio(self) -> None:
        tracker = self._build()
        self.radio.scan_errors = [RadioUnavailable("adapter powered off")]
        await tracker.start()
        self.assertFalse(tracker.is_scanning)


class PairingFlowTest(TrackerTestCase):
    async def test_pair_and_unpair_drive_registry_and_watcher(self) -> None:
        control = FakeWatcherControl()
        tracker = self._build(control=control)
        await tracker.start(scan=False)

        self.assertTrue(await tracker.pair(DEVICE, name="Tag"))
        self.assertTrue(self.registry.is_paired(DEVICE))
        self.assertEqual(self.radio.paired, [DEVICE])
        self.assertEqual(control.starts, 1)
        messages = [entry.message for entry in self._kinds(DEVICE, LogKind.PAIR)]
        self.assertEqual(messages, ['Pairing requested with "Tag"…', "Paired successfully & saved to storage"])
        self.assertIn(("Device Paired", "Successfully paired with Tag"), self.notifier.messages)
        changes = [event for event in self.events if isinstance(event, PairingChanged)]
        self.assertEqual(changes[-1].paired_ids, frozenset({DEVICE}))

        self.assertTrue(await tracker.unpair(DEVICE))
        self.assertFalse(self.registry.is_paired(DEVICE))
        self.assertEqual(control.stops, 1)
        self.assertEqual(tracker.paired_ids, set())

    async def test_pair_failure_leaves_registry_untouched(self) -> None:
        control = FakeWatcherControl()
        tracker = self._build(control=control)
        self.radio.pair_error = RadioError("bond rejected", device_id=DEVICE)
        await tracker.start(scan=False)

        self.assertFalse(await tracker.pair(DEVICE))
        self.assertEqual(self.registry.load_all(), set())
        self.assertEqual(control.starts, 0)
        errors = self._kinds(DEVICE, LogKind.ERROR)
        self.assertEqual(errors[0].message, "Pair failed: bond rejected")


class GattLoggingTest(TrackerTestCase):
    async def test_reads_writes_and_notifications_log_payloads(self) -> None:
        tracker = self._build()
        await tracker.start(scan=False)
        self.radio.link_up(DEVICE)
        self.radio.values[(DEVICE, "2a19")] = b"Hi"

        self.assertEqual(await tracker.read(DEVICE, "2a19"), b"Hi")
        self.assertTrue(await tracker.write(DEVICE, "2a19", b"\x01\xff"))
        self.assertTrue(await tracker.subscribe(DEVICE, "2a19"))
        self.radio.notify(DEVICE, "2a19", b"\x00\x10")
        await tracker.flush()

        read = self._kinds(DEVICE, LogKind.READ)[0]
        self.assertEqual((read.direction, read.hex_payload, read.payload_text), (LogDirection.INCOMING, "48 69", "Hi"))
        write = self._kinds(DEVICE, LogKind.WRITE)[0]
        self.assertEqual((write.direction, write.hex_payload, write.payload_text), (LogDirection.OUTGOING, "01 FF", None))
        self.assertEqual(self.radio.writes, [(DEVICE, "2a19", b"\x01\xff", True)])
        notify = self._kinds(DEVICE, LogKind.NOTIFY)[0]
        self.assertEqual(notify.hex_payload, "00 10")

    async def test_read_from_disconnected_device_logs_error(self) -> None:
        tracker = self._build()
        await tracker.start(scan=False)

        self.assertIsNone(await tracker.read(OTHER_DEVICE, "2a19"))
        self.assertEqual(len(self._kinds(OTHER_DEVICE, LogKind.ERROR)), 1)


class LogHandlingTest(TrackerTestCase):
    async def test_storage_failure_keeps_memory_copy_and_reports(self) -> None:
        tracker = self._build(store=FailingListStore())
        await tracker.start()

        self.radio.advertise(OTHER_DEVICE)
        await tracker.flush()

        self.assertEqual(len(self._kinds(OTHER_DEVICE, LogKind.SCAN)), 1)
        failures = [event for event in self.events if isinstance(event, TrackerError)]
        self.assertTrue(failures)
        self.assertEqual(failures[0].error_type, "StorageError")

    async def test_clear_logs_removes_memory_and_storage(self) -> None:
        tracker = self._build()
        await tracker.start()
        self.radio.advertise(OTHER_DEVICE)
        await tracker.flush()

        await tracker.clear_logs(OTHER_DEVICE)

        self.assertEqual(tracker.logs_for(OTHER_DEVICE), [])
        self.assertEqual(self.logs.load(OTHER_DEVICE), [])
        self.assertTrue(any(isinstance(event, LogsCleared) for event in self.events))

    async def test_cold_start_rebuilds_logs_from_storage(self) -> None:
        tracker = self._build()
        await tracker.start()
        self.radio.advertise(OTHER_DEVICE)
        self.radio.advertise(DEVICE)
        await tracker.flush()
        written = {entry.id for entry in tracker.all_logs}

        fresh = ConnectionTracker(FakeRadio(), PairingRegistry(self.store), LogStore(self.store))
        restored = await fresh.load_all_logs()

        self.assertEqual({entry.id for entry in restored}, written)


class StateTableTest(unittest.TestCase):
    def test_transition_only_from_expected_states(self) -> None:
        table = ConnectionStateTable()
        self.assertEqual(
            table.transition(DEVICE, ConnectionState.DISCOVERING, expected=(ConnectionState.IDLE,)),
            ConnectionState.IDLE,
        )
        self.assertIsNone(table.transition(DEVICE, ConnectionState.DISCOVERING, expected=(ConnectionState.IDLE,)))
        self.assertFalse(table.is_active(DEVICE))
        table.set(DEVICE, ConnectionState.CONNECTING)
        self.assertTrue(table.is_active(DEVICE))
        table.reset()
        self.assertEqual(table.get(DEVICE), ConnectionState.IDLE)


if __name__ == "__main__":
    unittest.main()
