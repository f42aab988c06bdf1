"""Change notification contract.

Same payload on both delivery paths (websocket broadcast and mailbox file):

    {"action": "onchange", "data": {"script": "<file contents>", "uri": "file:///..."}}
"""
from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict


class ChangeData(BaseModel):
    script: str
    uri: str

    model_config = ConfigDict(extra="forbid", frozen=True)


class ChangeMessage(BaseModel):
    action: Literal["onchange"] = "onchange"
    data: ChangeData

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def for_script(cls, *, script: str, uri: str) -> "ChangeMessage":
        return cls(data=ChangeData(script=script, uri=uri))

    def to_wire(self) -> str:
        """Compact JSON, as written to mailbox files and websocket clients."""
        return self.model_dump_json()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()
