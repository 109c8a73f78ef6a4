"""Conversation data models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

USER_SPEAKER = "user"


class ConversationTurn(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    speaker: str
    model_name: Optional[str] = None
    content: str
    round_number: int = 0
    tokens_used: int = 0
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_user(self) -> bool:
        return self.speaker == USER_SPEAKER


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenDelta(BaseModel):
    text: str = ""
    is_final: bool = False
    tokens: int = 0
