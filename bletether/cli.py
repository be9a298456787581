"""bletether command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from bletether.autostart import AutostartAction, AutostartHook, ProcessWatcherControl
from bletether.config import API_HOST, API_PORT, resolve_db_path
from bletether.errors import BletetherError
from bletether.models import LogEntry
from bletether.notifications import LogNotifier
from bletether.radio import RadioConfig
from bletether.runtime import build_tracker
from bletether.storage import LogStore, PairingRegistry, SqlKeyValueStore, WatcherLease
from bletether.tracker import TrackerConfig
from bletether.watcher import WATCH_TAG, BackgroundWatcher, WatcherConfig

logger = logging.getLogger("bletether.cli")


def _dump_json(data: Any) -> None:
	json.dump(data, sys.stdout, indent=2)
	sys.stdout.write("\n")


def _open_store(args: argparse.Namespace) -> SqlKeyValueStore:
	return SqlKeyValueStore(resolve_db_path(args.db))


def _radio_config(args: argparse.Namespace) -> RadioConfig:
	return RadioConfig(adapter=getattr(args, "adapter", None))


def _watcher_control(args: argparse.Namespace) -> Optional[ProcessWatcherControl]:
	if getattr(args, "no_watcher", False):
		return None
	return ProcessWatcherControl(resolve_db_path(args.db))


def _entry_row(entry: LogEntry) -> Dict[str, Any]:
	return {
		"time": entry.time_label,
		"dir": entry.direction_label,
		"type": entry.kind_label,
		"device": entry.device_name or entry.device_id,
		"message": entry.message,
		"hex": entry.hex_payload or "",
	}


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
async def _cmd_scan(args: argparse.Namespace) -> int:
	tracker = build_tracker(args.db, radio_config=_radio_config(args))
	await tracker.start(scan=False)
	try:
		await tracker.ensure_scanning()
		await asyncio.sleep(args.timeout)
	finally:
		await tracker.close()

	paired = tracker.paired_ids
	data = [
		{"address": item.device_id, "name": item.name, "rssi": item.rssi, "paired": item.device_id in paired}
		for item in tracker.discovered_devices
	]
	if args.json:
		_dump_json(data)
		return 0
	table = Table(title="BLE Scan Results", show_lines=False)
	for column in ("address", "name", "rssi", "paired"):
		table.add_column(column.upper())
	for entry in data:
		table.add_row(
			str(entry["address"]),
			str(entry["name"] or ""),
			"" if entry["rssi"] is None else str(entry["rssi"]),
			"yes" if entry["paired"] else "",
		)
	Console().print(table)
	return 0


async def _cmd_paired(args: argparse.Namespace) -> int:
	registry = PairingRegistry(_open_store(args))
	ids = sorted(await asyncio.to_thread(registry.load_all))
	if args.json:
		_dump_json(ids)
	elif ids:
		for device_id in ids:
			sys.stdout.write(f"{device_id}\n")
	else:
		Console().print("No paired devices.")
	return 0


async def _cmd_pair(args: argparse.Namespace) -> int:
	tracker = build_tracker(
		args.db,
		radio_config=_radio_config(args),
		config=TrackerConfig(bond_on_pair=not args.no_bond),
		watcher_control=_watcher_control(args),
	)
	await tracker.start(scan=False)
	try:
		ok = await tracker.pair(args.device, name=args.name)
	finally:
		await tracker.close()
	return 0 if ok else 1


async def _cmd_unpair(args: argparse.Namespace) -> int:
	tracker = build_tracker(
		args.db,
		radio_config=_radio_config(args),
		config=TrackerConfig(bond_on_pair=not args.no_bond),
	)
	await tracker.start(scan=False)
	try:
		ok = await tracker.unpair(args.device)
	finally:
		await tracker.close()
	return 0 if ok else 1


async def _cmd_logs(args: argparse.Namespace) -> int:
	logs = LogStore(_open_store(args))
	if args.device:
		entries = await logs.load_async(args.device)
	else:
		entries = []
		for device_id in sorted(await asyncio.to_thread(logs.list_devices_with_logs)):
			entries.extend(await logs.load_async(device_id))
		entries = LogStore.merge(entries, [])
	if args.limit:
		entries = entries[-args.limit:]
	if args.json:
		_dump_json([entry.to_dict() for entry in entries])
		return 0
	table = Table(title=f"BLE Log: {args.device}" if args.device else "BLE Log (all devices)")
	for column in ("time", "dir", "type", "device", "message", "hex"):
		table.add_column(column.upper())
	for entry in entries:
		row = _entry_row(entry)
		table.add_row(*(str(row[column]) for column in ("time", "dir", "type", "device", "message", "hex")))
	Console().print(table)
	return 0


async def _cmd_clear_logs(args: argparse.Namespace) -> int:
	if not args.device and not args.all:
		raise ValueError("give a device id or --all")
	logs = LogStore(_open_store(args))
	if args.all:
		await asyncio.to_thread(logs.clear_all)
	else:
		await logs.clear_async(args.device)
	return 0


async def _cmd_watch(args: argparse.Namespace) -> int:
	notifier = LogNotifier()
	tracker = build_tracker(
		args.db,
		radio_config=_radio_config(args),
		config=TrackerConfig(connect_timeout=args.connect_timeout, source_tag=WATCH_TAG),
		notifier=notifier,
	)
	watcher = BackgroundWatcher(
		tracker,
		config=WatcherConfig(
			interval=args.interval,
			radio_backoff=args.base_backoff,
			max_radio_backoff=args.max_backoff,
			rescan_delay=args.rescan_delay,
		),
		notifier=notifier,
		lease=WatcherLease(tracker.registry.store),
	)

	def _signal_handler(*_: Any) -> None:
		watcher.request_stop()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	reason = await watcher.run(runtime=args.runtime)
	logger.info("watch finished: %s", reason)
	return 0


def _cmd_serve(args: argparse.Namespace) -> int:
	from bletether.api import create_app

	app = create_app(
		db_path=args.db,
		scan_on_start=args.scan,
		watcher_control=_watcher_control(args),
	)
	uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
	return 0


def _cmd_autostart(args: argparse.Namespace) -> int:
	hook = AutostartHook(ProcessWatcherControl(resolve_db_path(args.db)))
	return 0 if hook.handle(args.action) else 1


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------
def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Keep paired BLE devices connected and log their traffic")
	parser.add_argument("--db", help="SQLite database path (default: $BLETETHER_DB or ~/.bletether/bletether.db)")
	parser.add_argument(
		"--log-level",
		default="INFO",
		choices=["DEBUG", "INFO", "WARNING", "ERROR"],
		help="Logging verbosity",
	)
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="Discover nearby BLE devices")
	scan.add_argument("--timeout", type=float, default=6.0, help="Scan duration in seconds")
	scan.add_argument("--adapter", help="BLE adapter identifier")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	paired = sub.add_parser("paired", help="List paired devices")
	paired.add_argument("--json", action="store_true", help="Output JSON")
	paired.set_defaults(handler=_cmd_paired)

	pair = sub.add_parser("pair", help="Pair with a device and start the background watcher")
	pair.add_argument("device", help="MAC/UUID of the device")
	pair.add_argument("--name", help="Display name to log")
	pair.add_argument("--adapter", help="BLE adapter identifier")
	pair.add_argument("--no-bond", action="store_true", help="Only remember the device, skip OS bonding")
	pair.add_argument("--no-watcher", action="store_true", help="Do not launch the background watcher")
	pair.set_defaults(handler=_cmd_pair)

	unpair = sub.add_parser("unpair", help="Forget a paired device")
	unpair.add_argument("device", help="MAC/UUID of the device")
	unpair.add_argument("--adapter", help="BLE adapter identifier")
	unpair.add_argument("--no-bond", action="store_true", help="Skip OS unbonding")
	unpair.set_defaults(handler=_cmd_unpair)

	logs = sub.add_parser("logs", help="Show stored BLE logs")
	logs.add_argument("device", nargs="?", help="Device id (default: all devices)")
	logs.add_argument("--limit", type=int, help="Show only the newest N entries")
	logs.add_argument("--json", action="store_true", help="Output JSON records")
	logs.set_defaults(handler=_cmd_logs)

	clear = sub.add_parser("clear-logs", help="Delete stored logs")
	clear.add_argument("device", nargs="?", help="Device id")
	clear.add_argument("--all", action="store_true", help="Clear logs of every device")
	clear.set_defaults(handler=_cmd_clear_logs)

	watch = sub.add_parser("watch", help="Run the background watcher until no device is paired")
	watch.add_argument("--adapter", help="BLE adapter identifier")
	watch.add_argument("--interval", type=float, default=30.0, help="Seconds between watch ticks")
	watch.add_argument("--connect-timeout", type=float, default=15.0, help="Connection timeout seconds")
	watch.add_argument("--base-backoff", type=float, default=2.0, help="Initial backoff while Bluetooth is off")
	watch.add_argument("--max-backoff", type=float, default=60.0, help="Maximum backoff while Bluetooth is off")
	watch.add_argument("--rescan-delay", type=float, default=30.0, help="Delay after a failed scan")
	watch.add_argument("--runtime", type=float, help="Optional watch duration seconds")
	watch.set_defaults(handler=_cmd_watch)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", default=API_HOST)
	serve.add_argument("--port", type=int, default=API_PORT)
	serve.add_argument("--scan", action="store_true", help="Start scanning when the server starts")
	serve.set_defaults(handler=_cmd_serve)

	autostart = sub.add_parser("autostart", help="Lifecycle hook: relaunch the background watcher")
	autostart.add_argument("action", choices=[action.value for action in AutostartAction])
	autostart.set_defaults(handler=_cmd_autostart)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=getattr(logging, args.log_level),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	try:
		if asyncio.iscoroutinefunction(args.handler):
			return asyncio.run(args.handler(args))
		return args.handler(args)
	except ValueError as exc:
		parser.error(str(exc))
	except BletetherError as exc:
		logger.error("%s", exc)
		return 1
	return 0  # pragma: no cover - parser.error exits


if __name__ == "__main__":
	sys.exit(main())
