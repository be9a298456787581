"""Tests for the key-value stores, the pairing registry and the log store."""
from __future__ import annotations

import asyncio
import multiprocessing
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from fakes import DEVICE, OTHER_DEVICE, ManualClock

from bletether.errors import StorageError
from bletether.models import LogDirection, LogEntry, LogKind
from bletether.storage import (
    HARD_MAX_ENTRIES,
    PAIRED_KEY,
    LogStore,
    MemoryKeyValueStore,
    PairingRegistry,
    SqlKeyValueStore,
    WatcherLease,
    log_key,
)

APPENDS_PER_PROCESS = 150


def _entry(clock, message: str = "hello", device_id: str = DEVICE, **offset: float) -> LogEntry:
    moment = clock.now - timedelta(**offset) if offset else clock.now
    return LogEntry.system(device_id, LogKind.INFO, message, clock=lambda: moment)


def _append_from_process(path: str, prefix: str) -> None:
    store = SqlKeyValueStore(path)
    logs = LogStore(store)
    try:
        for index in range(APPENDS_PER_PROCESS):
            logs.append(LogEntry.system(DEVICE, LogKind.INFO, f"{prefix} {index}"))
    finally:
        store.close()


class SqlKeyValueStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name, "nested", "bletether.db")
        self.store = SqlKeyValueStore(self.path)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def test_creates_parent_directory_and_persists_across_instances(self) -> None:
        self.store.set_string_set(PAIRED_KEY, {DEVICE})
        self.store.set_string_list("items", ["a", "b"])
        self.assertTrue(self.path.exists())

        other = SqlKeyValueStore(self.path)
        try:
            self.assertEqual(other.get_string_set(PAIRED_KEY), {DEVICE})
            self.assertEqual(other.get_string_list("items"), ["a", "b"])
        finally:
            other.close()

    def test_update_list_is_read_modify_write(self) -> None:
        self.store.update_list("items", lambda raw: raw + ["a"])
        updated = self.store.update_list("items", lambda raw: raw + ["b"])
        self.assertEqual(updated, ["a", "b"])
        self.assertEqual(self.store.get_string_list("items"), ["a", "b"])

    def test_kind_mismatch_raises_storage_error(self) -> None:
        self.store.set_string("key", "value")
        with self.assertRaises(StorageError):
            self.store.get_string_list("key")

    def test_keys_filter_by_prefix_and_remove(self) -> None:
        self.store.set_string_list(log_key(DEVICE), [])
        self.store.set_string_list(log_key(OTHER_DEVICE), [])
        self.store.set_string_set(PAIRED_KEY, set())
        self.assertEqual(self.store.keys("ble_log_"), {log_key(DEVICE), log_key(OTHER_DEVICE)})

        self.store.remove(log_key(DEVICE))
        self.assertIsNone(self.store.get_string_list(log_key(DEVICE)))

    def test_in_memory_url_is_supported(self) -> None:
        store = SqlKeyValueStore(":memory:")
        try:
            store.set_string("k", "v")
            self.assertEqual(store.get_string("k"), "v")
        finally:
            store.close()

    def test_update_string_sets_and_removes(self) -> None:
        self.assertEqual(self.store.update_string("owner", lambda current: current or "one"), "one")
        self.assertEqual(self.store.update_string("owner", lambda current: current or "two"), "one")
        self.assertIsNone(self.store.update_string("owner", lambda current: None))
        self.assertIsNone(self.store.get_string("owner"))

    def test_appends_from_two_processes_are_all_kept(self) -> None:
        ctx = multiprocessing.get_context("spawn")
        workers = [ctx.Process(target=_append_from_process, args=(str(self.path), name)) for name in ("left", "right")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=60)

        self.assertEqual([worker.exitcode for worker in workers], [0, 0])
        messages = [entry.message for entry in LogStore(self.store).load(DEVICE)]
        self.assertEqual(len(messages), 2 * APPENDS_PER_PROCESS)
        for name in ("left", "right"):
            own = [message for message in messages if message.startswith(name)]
            self.assertEqual(own, [f"{name} {index}" for index in range(APPENDS_PER_PROCESS)])


class PairingRegistryTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryKeyValueStore()
        self.registry = PairingRegistry(self.store)

    def test_add_and_remove_are_idempotent(self) -> None:
        self.registry.add_paired(DEVICE)
        self.registry.add_paired(DEVICE)
        self.assertEqual(self.registry.load_all(), {DEVICE})

        self.registry.remove_paired(DEVICE)
        self.registry.remove_paired(DEVICE)
        self.assertEqual(self.registry.load_all(), set())

    def test_empty_store_has_no_paired_devices(self) -> None:
        self.assertEqual(self.registry.load_all(), set())
        self.assertFalse(self.registry.is_paired(DEVICE))

    def test_rejects_empty_id(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.add_paired("")

    def test_uses_single_set_key(self) -> None:
        self.registry.add_paired(DEVICE)
        self.registry.add_paired(OTHER_DEVICE)
        self.assertEqual(self.store.get_string_set(PAIRED_KEY), {DEVICE, OTHER_DEVICE})

        self.registry.clear_all()
        self.assertEqual(self.store.keys(), set())

    def test_storage_errors_propagate(self) -> None:
        self.store.set_string(PAIRED_KEY, "not a set")
        with self.assertRaises(StorageError):
            self.registry.load_all()


class LogStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.store = MemoryKeyValueStore()
        self.logs = LogStore(self.store, clock=self.clock)

    def test_hard_cap_keeps_newest_entries_in_insertion_order(self) -> None:
        entries = [
            _entry(self.clock, f"entry {index}", seconds=HARD_MAX_ENTRIES - index)
            for index in range(HARD_MAX_ENTRIES + 1)
        ]
        for entry in entries:
            self.logs.append(entry)

        self.assertEqual(self.logs.entry_count(DEVICE), HARD_MAX_ENTRIES)
        raw = self.store.get_string_list(log_key(DEVICE))
        self.assertEqual([LogEntry.from_json(item).id for item in raw], [entry.id for entry in entries[1:]])
        self.assertEqual([entry.id for entry in self.logs.load(DEVICE)], [entry.id for entry in entries[1:]])

    def test_append_many_groups_by_device(self) -> None:
        self.logs.append_many(
            [
                _entry(self.clock, "one"),
                _entry(self.clock, "two", device_id=OTHER_DEVICE),
                _entry(self.clock, "three"),
            ]
        )
        self.assertEqual([entry.message for entry in self.logs.load(DEVICE)], ["one", "three"])
        self.assertEqual(self.logs.list_devices_with_logs(), {DEVICE, OTHER_DEVICE})

    def test_load_drops_entries_past_max_age(self) -> None:
        stale = _entry(self.clock, "stale", hours=24, minutes=1)
        fresh = _entry(self.clock, "fresh", hours=23, minutes=59)
        self.logs.append(stale)
        self.logs.append(fresh)

        self.assertEqual([entry.message for entry in self.logs.load(DEVICE)], ["fresh"])
        # retention is applied on read; the stale record is still on disk
        self.assertEqual(self.logs.entry_count(DEVICE), 2)

    def test_min_retention_wins_over_short_max_age(self) -> None:
        logs = LogStore(self.store, max_age=timedelta(minutes=5), clock=self.clock)
        logs.append(_entry(self.clock, "recent", minutes=20))
        self.assertEqual(len(logs.load(DEVICE)), 1)

    def test_load_skips_corrupted_records(self) -> None:
        valid = _entry(self.clock, "valid")
        self.store.set_string_list(log_key(DEVICE), ["{not json", valid.to_json(), '{"id": 1}'])

        with self.assertLogs("bletether.storage.logs", level="WARNING"):
            loaded = self.logs.load(DEVICE)

        self.assertEqual([entry.id for entry in loaded], [valid.id])

    def test_load_sorts_by_timestamp(self) -> None:
        later = _entry(self.clock, "later", minutes=1)
        earlier = _entry(self.clock, "earlier", minutes=2)
        self.logs.append(later)
        self.logs.append(earlier)
        self.assertEqual([entry.message for entry in self.logs.load(DEVICE)], ["earlier", "later"])

    def test_merge_is_union_by_id(self) -> None:
        a = _entry(self.clock, "a", minutes=3)
        b = _entry(self.clock, "b", minutes=2)
        c = _entry(self.clock, "c", minutes=1)

        merged = LogStore.merge([a, b], [b, c])

        self.assertEqual([entry.message for entry in merged], ["a", "b", "c"])

    def test_merge_with_already_persisted_memory_returns_persisted(self) -> None:
        persisted = [_entry(self.clock, name, minutes=3 - index) for index, name in enumerate("abc")]

        self.assertEqual(LogStore.merge(persisted, persisted[1:]), persisted)
        self.assertEqual(LogStore.merge(persisted, []), persisted)

    def test_refresh_merges_unflushed_memory_entries(self) -> None:
        persisted = _entry(self.clock, "persisted", minutes=1)
        pending = _entry(self.clock, "pending")
        self.logs.append(persisted)
        self.logs.remember(pending)

        refreshed = self.logs.refresh(DEVICE)

        self.assertEqual([entry.message for entry in refreshed], ["persisted", "pending"])
        self.assertEqual(self.logs.cached(DEVICE), refreshed)

    def test_clear_removes_device_only(self) -> None:
        self.logs.append(_entry(self.clock, "mine"))
        self.logs.append(_entry(self.clock, "theirs", device_id=OTHER_DEVICE))
        self.logs.remember(_entry(self.clock, "cached"))

        self.logs.clear(DEVICE)

        self.assertEqual(self.logs.load(DEVICE), [])
        self.assertEqual(self.logs.cached(DEVICE), [])
        self.assertEqual(len(self.logs.load(OTHER_DEVICE)), 1)

        self.logs.clear_all()
        self.assertEqual(self.logs.list_devices_with_logs(), set())

    def test_async_appends_keep_creation_order(self) -> None:
        entries = [_entry(self.clock, f"n{index}") for index in range(20)]

        async def _run() -> None:
            await asyncio.gather(*(self.logs.append_async(entry) for entry in entries))

        asyncio.run(_run())
        raw = self.store.get_string_list(log_key(DEVICE))
        self.assertEqual([LogEntry.from_json(item).message for item in raw], [entry.message for entry in entries])

    def test_rejects_non_positive_cap(self) -> None:
        with self.assertRaises(ValueError):
            LogStore(self.store, hard_max=0)


class WatcherLeaseTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryKeyValueStore()
        self.alive = {100, 200}

    def _lease(self, pid: int) -> WatcherLease:
        return WatcherLease(self.store, pid=pid, is_alive=lambda other: other in self.alive)

    def test_second_live_watcher_cannot_claim(self) -> None:
        first, second = self._lease(100), self._lease(200)

        self.assertTrue(first.claim())
        self.assertFalse(second.claim())
        self.assertEqual(second.holder(), 100)
        self.assertTrue(first.claim())

    def test_release_frees_the_lease_for_its_holder_only(self) -> None:
        first, second = self._lease(100), self._lease(200)
        first.claim()

        second.release()
        self.assertEqual(first.holder(), 100)

        first.release()
        self.assertIsNone(second.holder())
        self.assertTrue(second.claim())

    def test_dead_holder_is_taken_over(self) -> None:
        self._lease(300).claim()

        self.assertIsNone(self._lease(100).holder())
        self.assertTrue(self._lease(100).claim())
        self.assertEqual(self._lease(200).holder(), 100)

    def test_malformed_record_counts_as_free(self) -> None:
        self.store.set_string("ble_watcher_pid", "not-a-pid")
        with self.assertLogs("bletether.storage.lease", level="WARNING"):
            self.assertTrue(self._lease(100).claim())


class LogEntryTest(unittest.TestCase):
    def test_data_entry_renders_hex_and_printable_text(self) -> None:
        clock = ManualClock()
        entry = LogEntry.data(DEVICE, LogDirection.INCOMING, LogKind.NOTIFY, "n", b"OK", clock=clock)
        self.assertEqual(entry.hex_payload, "4F 4B")
        self.assertEqual(entry.payload_text, "OK")

        binary = LogEntry.data(DEVICE, LogDirection.INCOMING, LogKind.NOTIFY, "n", b"\x00\x7f", clock=clock)
        self.assertEqual(binary.hex_payload, "00 7F")
        self.assertIsNone(binary.payload_text)

    def test_persisted_record_layout(self) -> None:
        clock = ManualClock()
        entry = LogEntry.data(
            DEVICE, LogDirection.OUTGOING, LogKind.WRITE, "w", b"\x0a", device_name="Tag", clock=clock
        )
        record = entry.to_dict()
        self.assertEqual(
            set(record), {"id", "ts", "dId", "dName", "dir", "type", "msg", "hex", "ascii"}
        )
        self.assertEqual((record["dir"], record["type"], record["hex"]), (0, 6, "0A"))
        self.assertEqual(record["ts"], 1714564800000)
        self.assertEqual(LogEntry.from_dict(record), entry)

    def test_malformed_records_raise_value_error(self) -> None:
        for text in ("[]", "{}", '{"id": "x", "ts": "soon", "dId": "d", "dir": 0, "type": 0, "msg": ""}'):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    LogEntry.from_json(text)

    def test_labels(self) -> None:
        entry = LogEntry.system(DEVICE, LogKind.SERVICE_DISCOVERY, "s", clock=ManualClock())
        self.assertEqual(entry.kind_label, "SERVICES")
        self.assertEqual(entry.direction_label, "● SYS")
        self.assertRegex(entry.time_label, r"^\d{2}:\d{2}:\d{2}\.\d{3}$")

    def test_ids_are_unique(self) -> None:
        clock = ManualClock()
        ids = {LogEntry.system(DEVICE, LogKind.INFO, "x", clock=clock).id for _ in range(500)}
        self.assertEqual(len(ids), 500)


if __name__ == "__main__":
    unittest.main()
