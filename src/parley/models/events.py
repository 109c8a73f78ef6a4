"""Wire messages exchanged with a session client."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel

from .agent import AgentConfig

EventType = Literal[
    "ready",
    "round_start",
    "thinking",
    "chunk",
    "complete",
    "error",
    "round_end",
    "token_usage",
    "paused",
    "resumed",
    "checkpoint",
    "stopped",
]


class ClientMessage(BaseModel):
    type: Literal["user_message", "pause", "resume", "stop", "update_config"]
    content: str = ""
    mentioned_models: list[str] = []
    model_configs: Optional[list[AgentConfig]] = None
    autonomy_rounds: Optional[int] = None


class StreamEvent(BaseModel):
    type: EventType
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    content: Optional[str] = None
    tokens: Optional[int] = None
    tokens_per_second: Optional[float] = None
    round: Optional[int] = None
    error: Optional[str] = None
    color: Optional[str] = None
    usage: Optional[dict[str, int]] = None

    def to_wire(self) -> dict:
        """JSON-ready dict; unset fields are dropped, zero values are kept."""
        return self.model_dump(mode="json", exclude_none=True)
