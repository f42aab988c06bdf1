import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import MagicMock, patch


class TestConsoleCommands(unittest.TestCase):
    def setUp(self) -> None:
        from scsync.cli import ConsoleNotifier
        from scsync.kernel.settings import SyncSettings
        from scsync.kernel.workspace import WorkspaceState

        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        base = Path(self._td.name)
        self.ws = base / "ws"
        self.ws.mkdir()
        self.script = self.ws / "debug.user.js"
        self.script.write_text("x", encoding="utf-8")
        self.workspace = WorkspaceState(self.ws, home=base / "home")
        self.settings = SyncSettings()
        self.out = io.StringIO()
        self.notifier = ConsoleNotifier(out=self.out)
        self.dispatcher = MagicMock()
        self.made = []

    def _make_watcher(self, target):
        self.made.append(target)
        return ("watcher", target)

    def run_cmd(self, line: str) -> bool:
        from scsync.cli import handle_console_command

        return handle_console_command(
            line,
            dispatcher=self.dispatcher,
            workspace=self.workspace,
            settings=self.settings,
            notifier=self.notifier,
            make_watcher=self._make_watcher,
        )

    def test_target_pins_and_switches_watcher(self) -> None:
        self.assertTrue(self.run_cmd(f"target {self.script}\n"))
        self.assertEqual(len(self.made), 1)
        self.assertTrue(self.made[0].is_explicit)
        self.assertEqual(self.made[0].file, self.script.resolve())
        self.dispatcher.change_target_script.assert_called_once_with(("watcher", self.made[0]))
        self.assertEqual(self.workspace.get_target(), self.script.resolve())

    def test_target_rejects_missing_file(self) -> None:
        self.run_cmd(f"target {self.ws / 'nope.user.js'}")
        self.dispatcher.change_target_script.assert_not_called()
        self.assertIn("error:", self.out.getvalue())

    def test_auto_clears_pin_and_switches_to_glob(self) -> None:
        self.workspace.set_target(self.script)
        self.run_cmd("auto")
        self.assertIsNone(self.workspace.get_target())
        self.assertFalse(self.made[0].is_explicit)
        self.assertEqual(self.made[0].pattern, "**/*.user.js")
        self.dispatcher.change_target_script.assert_called_once()

    def test_mute_accepts_last_offer(self) -> None:
        calls = []
        self.run_cmd("mute")
        self.assertIn("nothing to mute", self.out.getvalue())
        self.notifier.offer_suppress("synced", lambda: calls.append(1))
        self.run_cmd("mute")
        self.run_cmd("mute")
        self.assertEqual(calls, [1])

    def test_quit_and_help(self) -> None:
        self.assertFalse(self.run_cmd("quit"))
        self.assertTrue(self.run_cmd(""))
        self.assertTrue(self.run_cmd("bogus"))
        self.assertIn("commands:", self.out.getvalue())

    def test_initial_target_prefers_existing_pin(self) -> None:
        from scsync.cli import initial_target

        self.assertFalse(initial_target(self.workspace, self.settings).is_explicit)
        self.workspace.set_target(self.script)
        self.assertEqual(initial_target(self.workspace, self.settings).file, self.script.resolve())
        self.script.unlink()
        self.assertFalse(initial_target(self.workspace, self.settings).is_explicit)


class TestCliCommands(unittest.TestCase):
    def test_target_and_auto_target_persist(self) -> None:
        from scsync.cli import main
        from scsync.kernel.workspace import WorkspaceState

        with tempfile.TemporaryDirectory() as td, patch.dict(os.environ, {"SCSYNC_HOME": str(Path(td) / "home")}):
            ws = Path(td) / "ws"
            ws.mkdir()
            script = ws / "debug.user.js"
            script.write_text("x", encoding="utf-8")

            buf = io.StringIO()
            with redirect_stdout(buf):
                self.assertEqual(main(["target", str(script), "--workspace", str(ws)]), 0)
            self.assertEqual(json.loads(buf.getvalue())["target"], str(script.resolve()))
            self.assertEqual(WorkspaceState(ws).get_target(), script.resolve())

            with redirect_stdout(io.StringIO()):
                self.assertEqual(main(["auto-target", "--workspace", str(ws)]), 0)
            self.assertIsNone(WorkspaceState(ws).get_target())

    def test_status_reports_unowned_port(self) -> None:
        import socket

        from scsync.cli import main

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        with tempfile.TemporaryDirectory() as td, patch.dict(
            os.environ, {"SCSYNC_HOME": td, "SCSYNC_PORT": str(port), "SCSYNC_SHARED_DIR": str(Path(td) / "box")}
        ):
            buf = io.StringIO()
            with redirect_stdout(buf):
                rc = main(["status"])
            doc = json.loads(buf.getvalue())
            self.assertEqual(rc, 1)
            self.assertFalse(doc["channel"]["owned"])
            self.assertEqual(doc["channel"]["port"], port)
            self.assertFalse(doc["mailbox"]["exists"])


    def test_config_shows_and_persists_settings(self) -> None:
        from scsync.cli import main
        from scsync.kernel.settings import load_settings

        with tempfile.TemporaryDirectory() as td, patch.dict(os.environ, {"SCSYNC_HOME": td}):
            for k in ("SCSYNC_PORT", "SCSYNC_SHARED_DIR", "SCSYNC_LOG_LEVEL"):
                os.environ.pop(k, None)

            buf = io.StringIO()
            with redirect_stdout(buf):
                self.assertEqual(main(["config"]), 0)
            self.assertEqual(json.loads(buf.getvalue())["port"], 8642)

            buf = io.StringIO()
            with redirect_stdout(buf):
                self.assertEqual(main(["config", "port", "9400"]), 0)
            self.assertEqual(json.loads(buf.getvalue()), {"port": 9400})
            self.assertEqual(load_settings(), {"port": 9400})

            buf = io.StringIO()
            with redirect_stdout(buf):
                self.assertEqual(main(["config", "port"]), 0)
            self.assertEqual(json.loads(buf.getvalue()), {"port": 9400})

            with patch("sys.stderr", new=io.StringIO()):
                self.assertEqual(main(["config", "colour", "blue"]), 2)
            self.assertEqual(load_settings(), {"port": 9400})


class TestConsoleInput(unittest.IsolatedAsyncioTestCase):
    async def test_piped_lines_reach_the_console_then_end(self) -> None:
        import asyncio

        from scsync.cli import _start_stdin_reader

        lines = asyncio.Queue()
        t = _start_stdin_reader(asyncio.get_running_loop(), lines, io.StringIO("debug\nquit\n"))
        got = [await asyncio.wait_for(lines.get(), timeout=5.0) for _ in range(3)]
        t.join(timeout=5.0)
        self.assertEqual(got, ["debug\n", "quit\n", None])


class TestJsonlLogging(unittest.TestCase):
    def test_formatter_includes_correlation_keys(self) -> None:
        import logging

        from scsync.util.obslog import JsonlFormatter

        rec = logging.LogRecord("scsync.dispatcher", logging.INFO, __file__, 1, "change %s", ("x",), None)
        rec.role = "follower"
        rec.uri = "file:///x.user.js"
        doc = json.loads(JsonlFormatter(component="scsync").format(rec))
        self.assertEqual(doc["msg"], "change x")
        self.assertEqual(doc["role"], "follower")
        self.assertEqual(doc["uri"], "file:///x.user.js")
        self.assertEqual(doc["component"], "scsync")
        self.assertNotIn("port", doc)


if __name__ == "__main__":
    unittest.main()
