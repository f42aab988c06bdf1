"""Per-workspace persisted state.

Each workspace (the directory a `scsync run` watches) gets its own state file
under SCSYNC_HOME/workspaces/<key>/state.json holding:
- target: the pinned explicit script path (absent in auto-detect mode)
- ignore_msg_<path>: "don't notify again for this file" flags
"""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Dict, Optional

from ..paths import ensure_home
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso

_IGNORE_PREFIX = "ignore_msg_"


def workspace_key(root: Path) -> str:
    h = hashlib.sha256(str(root.resolve()).encode("utf-8")).hexdigest()
    return "w_" + h[:12]


class WorkspaceState:
    def __init__(self, root: Path, *, home: Optional[Path] = None) -> None:
        self.root = root.resolve()
        base = home or ensure_home()
        self.path = base / "workspaces" / workspace_key(self.root) / "state.json"
        self.lock_path = self.path.with_name("state.lock")

    def _load(self) -> Dict[str, Any]:
        return read_json(self.path)

    def _save(self, doc: Dict[str, Any]) -> None:
        doc["v"] = 1
        doc["workspace"] = str(self.root)
        doc["updated_at"] = utc_now_iso()
        atomic_write_json(self.path, doc)

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def update(self, key: str, value: Any) -> None:
        """Set `key`; a None value removes it. Serialized across processes by state.lock."""
        with locked(self.lock_path):
            doc = self._load()
            if value is None:
                doc.pop(key, None)
            else:
                doc[key] = value
            self._save(doc)

    def get_target(self) -> Optional[Path]:
        raw = str(self.get("target") or "").strip()
        return Path(raw) if raw else None

    def set_target(self, path: Optional[Path]) -> None:
        self.update("target", str(path.resolve()) if path is not None else None)

    def is_ignored(self, file_path: str) -> bool:
        return bool(self.get(_IGNORE_PREFIX + file_path))

    def ignore(self, file_path: str) -> None:
        self.update(_IGNORE_PREFIX + file_path, True)
