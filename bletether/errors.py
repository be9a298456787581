"""Error taxonomy shared by the storage, radio and tracker layers."""
from __future__ import annotations

from typing import Optional


class BletetherError(Exception):
	"""Base class for every error raised by bletether."""


class StorageError(BletetherError):
	"""Persistence read or write failed; the operation was not committed."""


class RadioError(BletetherError):
	"""Base class for failures reported by the BLE radio."""

	def __init__(self, message: str, *, device_id: Optional[str] = None) -> None:
		super().__init__(message)
		self.device_id = device_id


class RadioUnavailable(RadioError):
	"""Adapter missing or powered off. Retried with a bounded backoff."""


class ConnectionFailure(RadioError):
	"""A connect attempt was rejected or timed out."""


class ScanFailure(RadioError):
	"""The platform refused to start or stop a scan."""


__all__ = [
	"BletetherError",
	"StorageError",
	"RadioError",
	"RadioUnavailable",
	"ConnectionFailure",
	"ScanFailure",
]
