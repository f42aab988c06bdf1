"""File mailbox for processes that do not own the broadcast channel.

Design:
- Any follower process drops one JSON file per change into a machine-wide
  shared directory; an external reader picks them up.
- File names embed creation time (epoch millis) plus a random fraction, so
  concurrent writers in different processes never collide.
- Each entry is deleted after a fixed TTL by a one-shot loop timer. The reader
  may delete it first; a cleanup that finds the file gone is a success.
- Delivery is best-effort: a failed write is logged and the message dropped.
"""
from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..contracts.v1 import ChangeMessage
from ..util.fs import atomic_write_text, unlink_if_exists
from ..util.time import epoch_millis

logger = logging.getLogger("scsync.mailbox")

_ENTRY_RE = re.compile(r"^message-(\d+)-[0-9.e-]+\.json$")


@dataclass(frozen=True)
class MailboxEntry:
    path: Path
    created_ms: int


def entry_name(created_ms: int) -> str:
    return f"message-{created_ms}-{random.random()}.json"


def entry_created_ms(name: str) -> Optional[int]:
    """Creation time embedded in an entry file name, or None for foreign files."""
    m = _ENTRY_RE.match(name)
    return int(m.group(1)) if m else None


class Mailbox:
    def __init__(self, shared_dir: Path, *, ttl_seconds: float = 5.0) -> None:
        self.shared_dir = shared_dir
        self.ttl_seconds = float(ttl_seconds)
        self._timers: Dict[Path, asyncio.TimerHandle] = {}

    def ensure_dir(self) -> Path:
        self.shared_dir.mkdir(parents=True, exist_ok=True)
        return self.shared_dir

    def exists(self) -> bool:
        return self.shared_dir.is_dir()

    def write(self, message: ChangeMessage) -> Optional[MailboxEntry]:
        """Drop `message` into the shared directory and schedule its cleanup.

        Must be called from the running event loop. Returns None when the write
        failed (already logged); the message is not retried.
        """
        loop = asyncio.get_running_loop()
        created_ms = epoch_millis()
        path = self.shared_dir / entry_name(created_ms)
        try:
            self.ensure_dir()
            atomic_write_text(path, message.to_wire())
        except OSError as e:
            logger.warning("mailbox write failed: %s", e, extra={"entry": str(path)})
            return None

        logger.info("mailbox entry created", extra={"entry": str(path), "uri": message.data.uri})
        self._timers[path] = loop.call_later(self.ttl_seconds, self.expire, path)
        return MailboxEntry(path=path, created_ms=created_ms)

    def expire(self, path: Path) -> None:
        """TTL cleanup for one entry. Never raises."""
        self._timers.pop(path, None)
        try:
            unlink_if_exists(path)
        except OSError as e:
            logger.warning("mailbox cleanup failed: %s", e, extra={"entry": str(path)})
            return
        logger.debug("mailbox entry cleaned", extra={"entry": str(path)})

    def pending(self) -> List[Path]:
        """Entries written by this process whose TTL has not fired yet."""
        return list(self._timers)

    def sweep_stale(self) -> int:
        """Delete entries older than the TTL whose writer exited before cleaning them.

        Returns the number of files removed.
        """
        if not self.exists():
            return 0
        cutoff = epoch_millis() - int(self.ttl_seconds * 1000)
        removed = 0
        for p in self.shared_dir.glob("message-*.json"):
            created = entry_created_ms(p.name)
            if created is None or created > cutoff or p in self._timers:
                continue
            try:
                unlink_if_exists(p)
            except OSError as e:
                logger.warning("mailbox sweep failed: %s", e, extra={"entry": str(p)})
                continue
            removed += 1
        if removed:
            logger.info("mailbox sweep removed %d stale entries", removed)
        return removed
