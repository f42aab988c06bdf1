"""Turns script file changes into channel traffic.

Each change is routed at dispatch time, never from a cached role:
- this process owns a live channel -> websocket broadcast
- channel bind malfunctioned       -> dropped (no channel, no mailbox this run)
- anything else (follower, dead)   -> mailbox file
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Tuple

from ..contracts.v1 import ChangeMessage, DebugSnapshot
from ..kernel.mailbox import Mailbox
from ..kernel.workspace import WorkspaceState
from .channel import BindError, ChannelOwner, ChannelState, NonOwner, Owner
from .watcher import FileEvent, Subscription, Watcher

logger = logging.getLogger("scsync.dispatcher")

Route = Literal["broadcast", "mailbox", "dropped"]


class Notifier(Protocol):
    """Operator-facing messages."""

    def info(self, text: str) -> None: ...

    def warning(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...

    def offer_suppress(self, text: str, suppress: Callable[[], None]) -> None: ...


class LogNotifier:
    """Notifier that only logs; never offers suppression."""

    def info(self, text: str) -> None:
        logger.info(text)

    def warning(self, text: str) -> None:
        logger.warning(text)

    def error(self, text: str) -> None:
        logger.error(text)

    def offer_suppress(self, text: str, suppress: Callable[[], None]) -> None:
        logger.info(text)


def role_of(state: ChannelState) -> str:
    if isinstance(state, Owner):
        return "owner"
    if isinstance(state, NonOwner):
        return "follower"
    if isinstance(state, BindError):
        return "unavailable"
    return "unbound"


class ChangeDispatcher:
    def __init__(
        self,
        watcher: Watcher,
        *,
        owner: ChannelOwner,
        mailbox: Mailbox,
        workspace: WorkspaceState,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.watcher = watcher
        self.owner = owner
        self.mailbox = mailbox
        self.workspace = workspace
        self.notifier: Notifier = notifier or LogNotifier()
        self._subs: List[Subscription] = []
        self._queue: Optional["asyncio.Queue[Tuple[str, FileEvent]]"] = None
        self._worker: Optional["asyncio.Task[None]"] = None
        self._started = False
        self._closed = False
        self._attach()

    async def start(self) -> ChannelState:
        """Resolve channel ownership, then begin watching and dispatching."""
        if self._started:
            return self.owner.state
        self._started = True

        try:
            self.mailbox.ensure_dir()
            self.mailbox.sweep_stale()
        except OSError as e:
            logger.warning("mailbox directory unavailable: %s", e)

        state = await self.owner.start()
        self.owner.add_message_handler(self._on_message)
        self._announce_role(state)

        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain(), name="scsync-dispatch")
        self._start_watcher()
        return state

    async def on_change(self, event: FileEvent) -> Optional[Route]:
        """Deliver one change. Returns the route taken, or None for ignored events."""
        if event.scheme != "file":
            return None
        try:
            script = Path(event.path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("cannot read changed script: %s", e, extra={"uri": event.uri})
            return None

        message = ChangeMessage.for_script(script=script, uri=event.uri)
        state = self.owner.state
        route: Route
        if self.owner.is_running():
            await self.owner.broadcast(message)
            route = "broadcast"
        elif isinstance(state, BindError):
            logger.warning("no channel for this process (%s); change dropped", state.cause, extra={"uri": event.uri})
            route = "dropped"
        elif self.mailbox.write(message) is None:
            self.notifier.warning(f"File communication failed: cannot write to {self.mailbox.shared_dir}")
            route = "dropped"
        else:
            route = "mailbox"

        logger.info("change %s via %s", event.path, route, extra={"uri": event.uri, "role": role_of(state)})
        return route

    def change_target_script(self, new_watcher: Watcher) -> None:
        """Swap the active watcher: dispose the old one, then install the new one."""
        self._detach()
        self.watcher.dispose()
        self.watcher = new_watcher
        self._attach()
        if self._started and not self._closed:
            self._start_watcher()
        logger.info("watch target switched", extra={"target": new_watcher.target.describe()})

    def get_actual_port(self) -> int:
        return self.owner.get_port()

    def get_debug_info(self) -> DebugSnapshot:
        return DebugSnapshot(
            isWebSocketOwner=isinstance(self.owner.state, Owner),
            wsManagerRunning=self.owner.is_running(),
            wsManagerPort=self.owner.get_port(),
            sharedDir=str(self.mailbox.shared_dir),
            sharedDirExists=self.mailbox.exists(),
        )

    async def flush(self) -> None:
        """Wait until every change queued so far has been dispatched."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.owner.remove_message_handler(self._on_message)
        self._detach()
        self.watcher.dispose()
        try:
            await asyncio.wait_for(self.flush(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("pending changes not dispatched before close")
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    def _attach(self) -> None:
        self._subs = [
            self.watcher.on_did_change(self._on_did_change),
            self.watcher.on_did_create(self._on_did_create),
        ]

    def _detach(self) -> None:
        for sub in self._subs:
            sub.dispose()
        self._subs = []

    def _start_watcher(self) -> None:
        try:
            self.watcher.start()
        except OSError as e:
            logger.error("cannot watch %s: %s", self.watcher.target.describe(), e)
            self.notifier.error(f"Cannot watch {self.watcher.target.describe()}: {e}")

    def _on_did_change(self, event: FileEvent) -> None:
        self._enqueue("change", event)

    def _on_did_create(self, event: FileEvent) -> None:
        self._enqueue("create", event)

    def _enqueue(self, kind: str, event: FileEvent) -> None:
        if self._queue is None or self._closed:
            return
        self._queue.put_nowait((kind, event))

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            kind, event = await self._queue.get()
            try:
                route = await self.on_change(event)
                # Only changes that actually left this process get the "synced" notice.
                if kind == "change" and route in ("broadcast", "mailbox"):
                    self._offer_suppress(event)
            except Exception:
                logger.exception("change dispatch failed", extra={"uri": event.uri})
            finally:
                self._queue.task_done()

    def _offer_suppress(self, event: FileEvent) -> None:
        key = event.path
        if self.workspace.is_ignored(key):
            return
        self.notifier.offer_suppress(f"{key} changes have been synced", lambda: self.workspace.ignore(key))

    def _on_message(self, obj: Dict[str, Any]) -> None:
        logger.debug("channel message received: action=%s", obj.get("action"))

    def _announce_role(self, state: ChannelState) -> None:
        if isinstance(state, Owner):
            self.notifier.info(f"Sync service started on port {state.port} (main window)")
        elif isinstance(state, NonOwner):
            self.notifier.info(
                "Sync service is running in another window, this window will use file communication mode (secondary window)"
            )
        elif isinstance(state, BindError):
            self.notifier.error(f"Sync service unavailable: {state.cause}")
        logger.info("channel role resolved", extra={"role": role_of(state), "port": self.owner.get_port()})
