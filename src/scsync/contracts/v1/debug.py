from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class DebugSnapshot(BaseModel):
    """Coordination state as seen by one process, for operator inspection."""

    isWebSocketOwner: bool
    wsManagerRunning: bool
    wsManagerPort: int
    sharedDir: str
    sharedDirExists: bool

    model_config = ConfigDict(extra="forbid", frozen=True)
