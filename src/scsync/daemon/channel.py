"""Machine-wide broadcast channel (single owner per port).

Election:
- Every process tries to bind the same well-known port exactly once, at startup.
- The kernel arbitrates the race: the process whose bind succeeds is the owner
  and serves a websocket endpoint; `address in use` means another process owns
  it and this one is a follower. Any other bind error is a malfunction.
- No re-election, heartbeat or takeover. Followers stay followers.

The listening socket is bound here (not by uvicorn) so the bind outcome can be
classified, then handed to `uvicorn.Server.serve(sockets=[...])`.
"""
from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import socket
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

import uvicorn
from fastapi import FastAPI, WebSocket

from ..contracts.v1 import ChangeMessage
from ..kernel.settings import get_settings

logger = logging.getLogger("scsync.channel")

NO_PORT = 0

# Windows socket error codes (winsock); SO_EXCLUSIVEADDRUSE conflicts surface as WSAEACCES.
_WSAEACCES = 10013
_WSAEADDRINUSE = 10048


@dataclass(frozen=True)
class Unbound:
    pass


@dataclass(frozen=True)
class Owner:
    port: int


@dataclass(frozen=True)
class NonOwner:
    pass


@dataclass(frozen=True)
class BindError:
    cause: str


ChannelState = Union[Unbound, Owner, NonOwner, BindError]

MessageHandler = Callable[[Dict[str, Any]], None]


def is_addr_in_use(e: OSError) -> bool:
    if e.errno in (errno.EADDRINUSE, _WSAEADDRINUSE):
        return True
    if os.name == "nt":
        return getattr(e, "winerror", None) in (_WSAEACCES, _WSAEADDRINUSE) or e.errno == _WSAEACCES
    return False


def bind_exclusive(host: str, port: int, *, backlog: int = 128) -> socket.socket:
    """Bind + listen on (host, port) so that no other process can share it."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name == "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
        else:
            # Only lets us reuse a TIME_WAIT port; a live listener still conflicts.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class ChannelOwner:
    def __init__(self, *, host: str = "127.0.0.1", port: int = 8642, log_level: str = "warning") -> None:
        self.host = host
        self.port = int(port)
        self.log_level = str(log_level or "warning").lower()
        self._state: ChannelState = Unbound()
        self._sock: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional["asyncio.Task[None]"] = None
        self._clients: Set[WebSocket] = set()
        self._handlers: List[MessageHandler] = []
        self._disposing = False

    @property
    def state(self) -> ChannelState:
        return self._state

    async def start(self) -> ChannelState:
        """Attempt the single bind for this lifecycle and return the resolved state."""
        if not isinstance(self._state, Unbound):
            return self._state

        try:
            sock = bind_exclusive(self.host, self.port)
        except OSError as e:
            if is_addr_in_use(e):
                self._state = NonOwner()
                logger.info("channel port already owned by another process", extra={"port": self.port, "role": "follower"})
            else:
                self._state = BindError(cause=str(e))
                logger.error("channel bind failed: %s", e, extra={"port": self.port})
            return self._state

        self._sock = sock
        config = uvicorn.Config(
            self._create_app(),
            log_config=None,
            log_level=self.log_level,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=2,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]), name="scsync-channel")
        self._serve_task.add_done_callback(self._on_serve_done)
        self._state = Owner(port=self.port)

        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(0.01)
        logger.info("channel listening on %s:%d", self.host, self.port, extra={"port": self.port, "role": "owner"})
        return self._state

    def is_running(self) -> bool:
        if not isinstance(self._state, Owner):
            return False
        if self._serve_task is None or self._serve_task.done():
            return False
        return self._sock is not None and self._sock.fileno() != -1

    def get_port(self) -> int:
        if isinstance(self._state, Owner):
            return self._state.port
        return NO_PORT

    def client_count(self) -> int:
        return len(self._clients)

    async def broadcast(self, message: Union[ChangeMessage, Dict[str, Any]]) -> int:
        """Send `message` to every connected client. Returns how many sends succeeded."""
        if not self.is_running():
            logger.warning("broadcast requested while channel is not running; dropped")
            return 0
        if isinstance(message, ChangeMessage):
            text = message.to_wire()
        else:
            text = json.dumps(message, ensure_ascii=False, separators=(",", ":"))

        sent = 0
        for ws in list(self._clients):
            try:
                await ws.send_text(text)
                sent += 1
            except Exception as e:
                # Client went away between accept and send.
                self._clients.discard(ws)
                logger.debug("dropping channel client: %s", e)
        return sent

    def add_message_handler(self, handler: MessageHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_message_handler(self, handler: MessageHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    async def dispose(self) -> None:
        """Stop serving and release the port. Safe to call in any state."""
        self._disposing = True
        try:
            if self._server is not None:
                self._server.should_exit = True
            if self._serve_task is not None and not self._serve_task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(self._serve_task), timeout=5.0)
                except asyncio.TimeoutError:
                    logger.warning("channel listener did not stop in time; cancelling")
                    self._serve_task.cancel()
                except Exception:
                    logger.exception("channel listener failed during shutdown")
            if self._sock is not None:
                self._sock.close()
        finally:
            self._sock = None
            self._server = None
            self._serve_task = None
            self._clients.clear()
            self._state = Unbound()
            self._disposing = False

    def _on_serve_done(self, task: "asyncio.Task[None]") -> None:
        if self._disposing or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("channel listener died", exc_info=exc, extra={"port": self.port})
        elif self._server is not None and self._server.should_exit:
            # uvicorn saw SIGINT/SIGTERM before dispose() ran.
            logger.info("channel listener shut down", extra={"port": self.port})
        else:
            logger.error("channel listener stopped", extra={"port": self.port})

    def _dispatch_inbound(self, raw: str) -> None:
        try:
            obj = json.loads(raw)
        except ValueError:
            logger.debug("ignoring non-JSON channel message")
            return
        if not isinstance(obj, dict):
            return
        for handler in list(self._handlers):
            try:
                handler(obj)
            except Exception:
                logger.exception("channel message handler failed")

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="scsync channel", docs_url=None, redoc_url=None, openapi_url=None)

        @app.websocket("/")
        async def channel(websocket: WebSocket) -> None:
            await websocket.accept()
            self._clients.add(websocket)
            logger.debug("channel client connected (%d total)", len(self._clients))
            try:
                while True:
                    msg = await websocket.receive()
                    if msg.get("type") == "websocket.disconnect":
                        break
                    raw = msg.get("text")
                    if raw is None and msg.get("bytes") is not None:
                        raw = msg["bytes"].decode("utf-8", errors="replace")
                    if raw:
                        self._dispatch_inbound(raw)
            finally:
                self._clients.discard(websocket)
                logger.debug("channel client disconnected (%d left)", len(self._clients))

        return app


_OWNER: Optional[ChannelOwner] = None


def get_channel_owner() -> ChannelOwner:
    """The process-wide channel owner, configured from settings on first use."""
    global _OWNER
    if _OWNER is None:
        s = get_settings()
        _OWNER = ChannelOwner(host=s.host, port=s.port, log_level=s.log_level)
    return _OWNER
