from __future__ import annotations

import argparse
import asyncio
import json
import signal
import socket
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

from . import __version__
from .daemon.channel import get_channel_owner
from .daemon.dispatcher import ChangeDispatcher
from .daemon.watcher import ScriptWatcher, WatchTarget, Watcher
from .kernel.mailbox import Mailbox
from .kernel.settings import SETTING_KEYS, SyncSettings, get_settings, update_settings
from .kernel.workspace import WorkspaceState
from .util.obslog import setup_root_json_logging

WatcherFactory = Callable[[WatchTarget], Watcher]

CONSOLE_HELP = "commands: target <path> | auto | mute | debug | quit"


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


class ConsoleNotifier:
    """Notifier for an interactive `scsync run`; `mute` accepts the last suppression offer."""

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self._out = out or sys.stdout
        self._pending_suppress: Optional[Callable[[], None]] = None

    def _say(self, prefix: str, text: str) -> None:
        print(f"{prefix}{text}", file=self._out, flush=True)

    def info(self, text: str) -> None:
        self._say("", text)

    def warning(self, text: str) -> None:
        self._say("warning: ", text)

    def error(self, text: str) -> None:
        self._say("error: ", text)

    def offer_suppress(self, text: str, suppress: Callable[[], None]) -> None:
        self._pending_suppress = suppress
        self._say("", f"{text} (type 'mute' to stop showing this for the file)")

    def mute(self) -> bool:
        suppress, self._pending_suppress = self._pending_suppress, None
        if suppress is None:
            return False
        suppress()
        return True


def initial_target(workspace: WorkspaceState, settings: SyncSettings) -> WatchTarget:
    """Pinned target if it still exists, otherwise auto-detect over the workspace."""
    pinned = workspace.get_target()
    if pinned is not None and pinned.is_file():
        return WatchTarget.explicit(pinned)
    return WatchTarget.auto(workspace.root, settings.auto_pattern)


def handle_console_command(
    line: str,
    *,
    dispatcher: ChangeDispatcher,
    workspace: WorkspaceState,
    settings: SyncSettings,
    notifier: ConsoleNotifier,
    make_watcher: WatcherFactory = ScriptWatcher,
) -> bool:
    """Apply one console line. Returns False when the console asked to quit."""
    cmd, _, arg = line.strip().partition(" ")
    arg = arg.strip()
    if not cmd:
        return True
    if cmd in ("quit", "exit"):
        return False
    if cmd == "target":
        if not arg:
            notifier.error("usage: target <path>")
            return True
        p = Path(arg).expanduser()
        if not p.is_file():
            notifier.error(f"not a file: {p}")
            return True
        workspace.set_target(p)
        dispatcher.change_target_script(make_watcher(WatchTarget.explicit(p)))
        notifier.info(f"Script selected: {p.resolve()}")
        return True
    if cmd == "auto":
        workspace.set_target(None)
        dispatcher.change_target_script(make_watcher(WatchTarget.auto(workspace.root, settings.auto_pattern)))
        notifier.info(f"Auto-detect mode enabled ({settings.auto_pattern})")
        return True
    if cmd == "mute":
        if not notifier.mute():
            notifier.info("nothing to mute")
        return True
    if cmd == "debug":
        _print_json(dispatcher.get_debug_info().model_dump())
        return True
    notifier.info(CONSOLE_HELP)
    return True


def _start_stdin_reader(
    loop: asyncio.AbstractEventLoop, lines: "asyncio.Queue[Optional[str]]", stream: Optional[TextIO] = None
) -> threading.Thread:
    """Feed console lines (terminal or pipe) into `lines`; None marks end of input."""
    src = stream or sys.stdin

    def _read() -> None:
        for line in src:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, None)

    t = threading.Thread(target=_read, name="scsync-console", daemon=True)
    t.start()
    return t


async def _run(workspace_root: Path, settings: SyncSettings) -> int:
    loop = asyncio.get_running_loop()
    workspace = WorkspaceState(workspace_root)
    notifier = ConsoleNotifier()
    mailbox = Mailbox(settings.shared_dir, ttl_seconds=settings.mailbox_ttl_seconds)
    owner = get_channel_owner()
    dispatcher = ChangeDispatcher(
        ScriptWatcher(initial_target(workspace, settings)),
        owner=owner,
        mailbox=mailbox,
        workspace=workspace,
        notifier=notifier,
    )

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    try:
        await dispatcher.start()
        notifier.info(CONSOLE_HELP)
        if sys.stdin is not None and not sys.stdin.closed:
            _start_stdin_reader(loop, lines)

        stop_wait = asyncio.ensure_future(stop.wait())
        try:
            while not stop.is_set():
                line_wait = asyncio.ensure_future(lines.get())
                done, _ = await asyncio.wait({line_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                if line_wait not in done:
                    line_wait.cancel()
                    break
                line = line_wait.result()
                if line is None:
                    # stdin closed; keep serving until signalled.
                    await stop_wait
                    break
                keep = handle_console_command(
                    line, dispatcher=dispatcher, workspace=workspace, settings=settings, notifier=notifier
                )
                if not keep:
                    break
        finally:
            stop_wait.cancel()
    finally:
        await dispatcher.close()
        await owner.dispose()
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    settings = get_settings()
    level = str(args.log_level or settings.log_level)
    setup_root_json_logging(component="scsync", level=level)
    root = Path(args.workspace).expanduser()
    if not root.is_dir():
        print(f"error: workspace is not a directory: {root}", file=sys.stderr)
        return 1
    try:
        return asyncio.run(_run(root, settings))
    except KeyboardInterrupt:
        return 130


def cmd_target(args: argparse.Namespace) -> int:
    p = Path(args.path).expanduser()
    if not p.is_file():
        print(f"error: not a file: {p}", file=sys.stderr)
        return 1
    workspace = WorkspaceState(Path(args.workspace).expanduser())
    workspace.set_target(p)
    _print_json({"workspace": str(workspace.root), "target": str(p.resolve())})
    return 0


def cmd_auto_target(args: argparse.Namespace) -> int:
    workspace = WorkspaceState(Path(args.workspace).expanduser())
    workspace.set_target(None)
    _print_json({"workspace": str(workspace.root), "target": None, "pattern": get_settings().auto_pattern})
    return 0


def _port_owned(host: str, port: int, timeout_s: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True
    except OSError:
        return False


def cmd_status(args: argparse.Namespace) -> int:
    settings = get_settings()
    owned = _port_owned(settings.host, settings.port)
    shared = settings.shared_dir
    entries = len(list(shared.glob("message-*.json"))) if shared.is_dir() else 0
    _print_json(
        {
            "channel": {"host": settings.host, "port": settings.port, "owned": owned},
            "mailbox": {"dir": str(shared), "exists": shared.is_dir(), "entries": entries},
        }
    )
    return 0 if owned else 1


def cmd_config(args: argparse.Namespace) -> int:
    if args.key is None:
        _print_json(get_settings().to_dict())
        return 0
    if args.key not in SETTING_KEYS:
        print(f"error: unknown setting: {args.key} (one of: {', '.join(SETTING_KEYS)})", file=sys.stderr)
        return 2
    if args.value is None:
        _print_json({args.key: get_settings().to_dict()[args.key]})
        return 0
    saved = update_settings({args.key: args.value})
    _print_json({args.key: saved.to_dict()[args.key]})
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="scsync", description="Sync user scripts to ScriptCat (one channel per machine)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Watch a workspace and publish script changes")
    p_run.add_argument("--workspace", default=".", help="Workspace root (default: current directory)")
    p_run.add_argument("--log-level", default="", help="Log level (default: from settings)")
    p_run.set_defaults(func=cmd_run)

    p_target = sub.add_parser("target", help="Pin an explicit script for a workspace")
    p_target.add_argument("path", help="Script file to watch")
    p_target.add_argument("--workspace", default=".", help="Workspace root (default: current directory)")
    p_target.set_defaults(func=cmd_target)

    p_auto = sub.add_parser("auto-target", help="Clear the pinned script (auto-detect *.user.js)")
    p_auto.add_argument("--workspace", default=".", help="Workspace root (default: current directory)")
    p_auto.set_defaults(func=cmd_auto_target)

    p_status = sub.add_parser("status", help="Show channel ownership and mailbox state on this machine")
    p_status.set_defaults(func=cmd_status)

    p_config = sub.add_parser("config", help="Show settings, or persist one value to settings.yaml")
    p_config.add_argument("key", nargs="?", default=None, help="Setting name")
    p_config.add_argument("value", nargs="?", default=None, help="New value (omit to show the current one)")
    p_config.set_defaults(func=cmd_config)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
