"""User-visible status messages for connect, disconnect and pairing events."""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

STATUS_TITLE = "BLE Monitor"
WATCHING_STATUS = "Watching for your paired devices…"


class Notifier(Protocol):
    def show(self, title: str, body: str) -> None: ...


class LogNotifier:
    """Report notifications through the ``bletether.notifications`` logger.

    Keeps the most recent message as :attr:`status` so a status line can be
    rendered by whatever front end is attached.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level
        self.status: Optional[str] = None

    def show(self, title: str, body: str) -> None:
        self.status = body
        logger.log(self.level, "NOTIFY %s: %s", title, body)


class RecordingNotifier:
    """Keeps every notification in memory; handy for front ends and tests."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def show(self, title: str, body: str) -> None:
        self.messages.append((title, body))


def notify_safely(notifier: Optional[Notifier], title: str, body: str) -> None:
    """Fire-and-forget delivery; a broken notifier never breaks the caller."""
    if notifier is None:
        return
    try:
        notifier.show(title, body)
    except Exception:
        logger.debug("Notification delivery failed for %r", title, exc_info=True)


__all__ = [
    "Notifier",
    "LogNotifier",
    "RecordingNotifier",
    "notify_safely",
    "STATUS_TITLE",
    "WATCHING_STATUS",
]
