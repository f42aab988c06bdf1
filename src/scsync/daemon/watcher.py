from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from ..kernel.settings import DEFAULT_AUTO_PATTERN

logger = logging.getLogger("scsync.watcher")


@dataclass(frozen=True)
class FileEvent:
    uri: str
    path: str
    scheme: str = "file"

    @classmethod
    def from_path(cls, path: Path) -> "FileEvent":
        p = path.absolute()
        return cls(uri=p.as_uri(), path=str(p), scheme="file")


Listener = Callable[[FileEvent], None]


@dataclass(frozen=True)
class WatchTarget:
    """Either one pinned script file, or a glob over a workspace root."""

    root: Path
    pattern: str = DEFAULT_AUTO_PATTERN
    file: Optional[Path] = None

    @classmethod
    def explicit(cls, path: Path) -> "WatchTarget":
        p = path.resolve()
        return cls(root=p.parent, pattern="", file=p)

    @classmethod
    def auto(cls, root: Path, pattern: str = DEFAULT_AUTO_PATTERN) -> "WatchTarget":
        return cls(root=root.resolve(), pattern=pattern or DEFAULT_AUTO_PATTERN)

    @property
    def is_explicit(self) -> bool:
        return self.file is not None

    def matches(self, path: Path) -> bool:
        if self.file is not None:
            return path == self.file
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return False
        if fnmatch(rel.as_posix(), self.pattern):
            return True
        # "**/" also matches files directly under the root.
        return self.pattern.startswith("**/") and fnmatch(rel.name, self.pattern[3:])

    def describe(self) -> str:
        if self.file is not None:
            return str(self.file)
        return f"{self.root}/{self.pattern}"


class Subscription:
    def __init__(self, listeners: List[Listener], listener: Listener) -> None:
        self._listeners = listeners
        self._listener = listener

    def dispose(self) -> None:
        try:
            self._listeners.remove(self._listener)
        except ValueError:
            pass


class Watcher(Protocol):
    target: WatchTarget

    def on_did_change(self, listener: Listener) -> Subscription: ...

    def on_did_create(self, listener: Listener) -> Subscription: ...

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None: ...

    def dispose(self) -> None: ...


class _ScriptEventHandler(FileSystemEventHandler):
    """Runs on the watchdog observer thread; forwards to the owning watcher."""

    def __init__(self, watcher: "ScriptWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.post("change", os.fsdecode(event.src_path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.post("create", os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors that save via write-to-temp + rename show up as a move onto the script.
        if not event.is_directory:
            self._watcher.post("change", os.fsdecode(event.dest_path))


class ScriptWatcher:
    """watchdog observer for one WatchTarget, delivering events on the asyncio loop."""

    def __init__(self, target: WatchTarget) -> None:
        self.target = target
        self.handler = _ScriptEventHandler(self)
        self._change: List[Listener] = []
        self._create: List[Listener] = []
        self._observer: Optional[BaseObserver] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_did_change(self, listener: Listener) -> Subscription:
        self._change.append(listener)
        return Subscription(self._change, listener)

    def on_did_create(self, listener: Listener) -> Subscription:
        self._create.append(listener)
        return Subscription(self._create, listener)

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._disposed or self._observer is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(self.handler, str(self.target.root), recursive=not self.target.is_explicit)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("watching %s", self.target.describe(), extra={"target": self.target.describe()})

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._change.clear()
        self._create.clear()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=2.0)
        except (OSError, RuntimeError) as e:
            logger.warning("watcher shutdown failed: %s", e, extra={"target": self.target.describe()})

    def post(self, kind: str, raw_path: str) -> None:
        """Hand an observer-thread event to the loop thread."""
        loop = self._loop
        if loop is None or self._disposed:
            return
        path = Path(raw_path).absolute()
        if not self.target.matches(path):
            return
        try:
            loop.call_soon_threadsafe(self._emit, kind, FileEvent.from_path(path))
        except RuntimeError:
            # Loop already closed (process shutting down).
            pass

    def _emit(self, kind: str, event: FileEvent) -> None:
        if self._disposed:
            return
        listeners = self._change if kind == "change" else self._create
        for listener in list(listeners):
            listener(event)
