"""Global settings for scsync.

Settings are stored in ~/.scsync/settings.yaml (SCSYNC_HOME overrides the home):

    host: 127.0.0.1
    port: 8642
    mailbox_ttl_seconds: 5
    shared_dir: /tmp/scriptcat-vscode
    auto_pattern: "**/*.user.js"
    log_level: INFO

Environment overrides: SCSYNC_PORT, SCSYNC_SHARED_DIR, SCSYNC_LOG_LEVEL.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml  # type: ignore

from ..paths import default_shared_dir, ensure_home
from ..util.fs import atomic_write_text

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8642
DEFAULT_MAILBOX_TTL_SECONDS = 5.0
DEFAULT_AUTO_PATTERN = "**/*.user.js"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
SETTING_KEYS = ("host", "port", "mailbox_ttl_seconds", "shared_dir", "auto_pattern", "log_level")


def _coerce_port(v: Any) -> int:
    try:
        port = int(v)
    except (TypeError, ValueError):
        return DEFAULT_PORT
    return port if 0 < port < 65536 else DEFAULT_PORT


def _coerce_level(v: Any) -> str:
    s = str(v or "").strip().upper()
    return s if s in _LOG_LEVELS else "INFO"


def _coerce_ttl(v: Any) -> float:
    try:
        ttl = float(v)
    except (TypeError, ValueError):
        return DEFAULT_MAILBOX_TTL_SECONDS
    return ttl if ttl > 0 else DEFAULT_MAILBOX_TTL_SECONDS


@dataclass
class SyncSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    mailbox_ttl_seconds: float = DEFAULT_MAILBOX_TTL_SECONDS
    shared_dir: Path = field(default_factory=default_shared_dir)
    auto_pattern: str = DEFAULT_AUTO_PATTERN
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "mailbox_ttl_seconds": self.mailbox_ttl_seconds,
            "shared_dir": str(self.shared_dir),
            "auto_pattern": self.auto_pattern,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SyncSettings":
        shared = str(d.get("shared_dir") or "").strip()
        return cls(
            host=str(d.get("host") or DEFAULT_HOST).strip() or DEFAULT_HOST,
            port=_coerce_port(d.get("port", DEFAULT_PORT)),
            mailbox_ttl_seconds=_coerce_ttl(d.get("mailbox_ttl_seconds", DEFAULT_MAILBOX_TTL_SECONDS)),
            shared_dir=Path(shared).expanduser() if shared else default_shared_dir(),
            auto_pattern=str(d.get("auto_pattern") or DEFAULT_AUTO_PATTERN).strip() or DEFAULT_AUTO_PATTERN,
            log_level=_coerce_level(d.get("log_level")),
        )


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings() -> Dict[str, Any]:
    """Load raw settings from ~/.scsync/settings.yaml."""
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return doc if isinstance(doc, dict) else {}


def save_settings(settings: Dict[str, Any]) -> None:
    """Save raw settings to ~/.scsync/settings.yaml."""
    p = _settings_path()
    atomic_write_text(p, yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def update_settings(changes: Dict[str, Any]) -> SyncSettings:
    """Merge `changes` into the settings file, storing values as they will be read back."""
    unknown = sorted(set(changes) - set(SETTING_KEYS))
    if unknown:
        raise ValueError("unknown setting: " + ", ".join(unknown))
    doc = dict(load_settings())
    doc.update(changes)
    normalized = SyncSettings.from_dict(doc).to_dict()
    save_settings({k: normalized[k] if k in normalized else v for k, v in doc.items()})
    return SyncSettings.from_dict(doc)


def get_settings() -> SyncSettings:
    """Settings file merged with environment overrides."""
    doc = dict(load_settings())
    env_port = os.environ.get("SCSYNC_PORT", "").strip()
    if env_port:
        doc["port"] = env_port
    env_dir = os.environ.get("SCSYNC_SHARED_DIR", "").strip()
    if env_dir:
        doc["shared_dir"] = env_dir
    env_level = os.environ.get("SCSYNC_LOG_LEVEL", "").strip()
    if env_level:
        doc["log_level"] = env_level
    return SyncSettings.from_dict(doc)
