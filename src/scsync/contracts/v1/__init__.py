from __future__ import annotations

from .debug import DebugSnapshot
from .message import ChangeData, ChangeMessage

__all__ = [
    "ChangeData",
    "ChangeMessage",
    "DebugSnapshot",
]
