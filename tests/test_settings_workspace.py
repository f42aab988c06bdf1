import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


class TestSettings(unittest.TestCase):
    def test_defaults_without_settings_file(self) -> None:
        from scsync.kernel.settings import get_settings
        from scsync.paths import SHARED_DIR_NAME

        with tempfile.TemporaryDirectory() as td, patch.dict(os.environ, {"SCSYNC_HOME": td}):
            for k in ("SCSYNC_PORT", "SCSYNC_SHARED_DIR", "SCSYNC_LOG_LEVEL"):
                os.environ.pop(k, None)
            s = get_settings()
            self.assertEqual(s.host, "127.0.0.1")
            self.assertEqual(s.port, 8642)
            self.assertEqual(s.mailbox_ttl_seconds, 5.0)
            self.assertEqual(s.shared_dir.name, SHARED_DIR_NAME)
            self.assertEqual(s.auto_pattern, "**/*.user.js")

    def test_yaml_values_and_env_overrides(self) -> None:
        from scsync.kernel.settings import get_settings, save_settings

        with tempfile.TemporaryDirectory() as td, patch.dict(os.environ, {"SCSYNC_HOME": td}):
            save_settings({"port": 9000, "mailbox_ttl_seconds": 2, "shared_dir": str(Path(td) / "box"), "log_level": "debug"})
            s = get_settings()
            self.assertEqual(s.port, 9000)
            self.assertEqual(s.mailbox_ttl_seconds, 2.0)
            self.assertEqual(s.shared_dir, Path(td) / "box")
            self.assertEqual(s.log_level, "DEBUG")

            with patch.dict(os.environ, {"SCSYNC_PORT": "9100", "SCSYNC_SHARED_DIR": str(Path(td) / "env")}):
                s = get_settings()
                self.assertEqual(s.port, 9100)
                self.assertEqual(s.shared_dir, Path(td) / "env")

    def test_invalid_values_fall_back_to_defaults(self) -> None:
        from scsync.kernel.settings import SyncSettings

        s = SyncSettings.from_dict({"port": "nope", "mailbox_ttl_seconds": -1, "log_level": "loud", "host": ""})
        self.assertEqual(s.port, 8642)
        self.assertEqual(s.mailbox_ttl_seconds, 5.0)
        self.assertEqual(s.log_level, "INFO")
        self.assertEqual(s.host, "127.0.0.1")
        self.assertEqual(SyncSettings.from_dict({"port": 70000}).port, 8642)

    def test_update_settings_merges_and_normalizes(self) -> None:
        from scsync.kernel.settings import get_settings, load_settings, save_settings, update_settings

        with tempfile.TemporaryDirectory() as td, patch.dict(os.environ, {"SCSYNC_HOME": td}):
            for k in ("SCSYNC_PORT", "SCSYNC_SHARED_DIR", "SCSYNC_LOG_LEVEL"):
                os.environ.pop(k, None)
            save_settings({"auto_pattern": "src/*.user.js"})

            s = update_settings({"port": "9300", "log_level": "debug"})
            self.assertEqual(s.port, 9300)
            self.assertEqual(load_settings(), {"auto_pattern": "src/*.user.js", "port": 9300, "log_level": "DEBUG"})
            self.assertEqual(get_settings().auto_pattern, "src/*.user.js")

            with self.assertRaises(ValueError):
                update_settings({"colour": "blue"})
            self.assertNotIn("colour", load_settings())


class TestWorkspaceState(unittest.TestCase):
    def test_target_and_ignore_flags_persist(self) -> None:
        from scsync.kernel.workspace import WorkspaceState

        with tempfile.TemporaryDirectory() as td:
            home = Path(td) / "home"
            ws = Path(td) / "ws"
            ws.mkdir()
            script = ws / "debug.user.js"
            script.write_text("x", encoding="utf-8")

            state = WorkspaceState(ws, home=home)
            self.assertIsNone(state.get_target())
            state.set_target(script)
            state.ignore("/ws/foo.user.js")

            again = WorkspaceState(ws, home=home)
            self.assertEqual(again.get_target(), script.resolve())
            self.assertTrue(again.is_ignored("/ws/foo.user.js"))
            self.assertFalse(again.is_ignored("/ws/bar.user.js"))

            again.set_target(None)
            self.assertIsNone(WorkspaceState(ws, home=home).get_target())
            self.assertTrue(WorkspaceState(ws, home=home).is_ignored("/ws/foo.user.js"))

    def test_workspaces_do_not_share_state(self) -> None:
        from scsync.kernel.workspace import WorkspaceState, workspace_key

        with tempfile.TemporaryDirectory() as td:
            home = Path(td) / "home"
            a, b = Path(td) / "a", Path(td) / "b"
            a.mkdir()
            b.mkdir()
            self.assertNotEqual(workspace_key(a), workspace_key(b))
            WorkspaceState(a, home=home).ignore("/x.user.js")
            self.assertFalse(WorkspaceState(b, home=home).is_ignored("/x.user.js"))

    def test_concurrent_updates_are_not_lost(self) -> None:
        import threading

        from scsync.kernel.workspace import WorkspaceState

        with tempfile.TemporaryDirectory() as td:
            home = Path(td) / "home"
            ws = Path(td) / "ws"
            ws.mkdir()

            def writer(n: int) -> None:
                # Separate instances, like separate scsync processes.
                state = WorkspaceState(ws, home=home)
                for i in range(10):
                    state.ignore(f"/ws/{n}-{i}.user.js")

            threads = [threading.Thread(target=writer, args=(n,)) for n in range(6)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            state = WorkspaceState(ws, home=home)
            missing = [f"{n}-{i}" for n in range(6) for i in range(10) if not state.is_ignored(f"/ws/{n}-{i}.user.js")]
            self.assertEqual(missing, [])
            self.assertTrue(state.lock_path.exists())


if __name__ == "__main__":
    unittest.main()
