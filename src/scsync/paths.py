from __future__ import annotations

import os
import tempfile
from pathlib import Path

SHARED_DIR_NAME = "scriptcat-vscode"


def scsync_home() -> Path:
    env = os.environ.get("SCSYNC_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".scsync").resolve()


def ensure_home() -> Path:
    home = scsync_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def default_shared_dir() -> Path:
    """Mailbox directory shared by every process on this machine."""
    return Path(tempfile.gettempdir()) / SHARED_DIR_NAME
