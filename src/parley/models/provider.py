"""AI provider data models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    MALFORMED_STREAM = "malformed_stream"
    CONFIGURATION = "configuration"
    PROVIDER = "provider"


class StreamResult(BaseModel):
    success: bool
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    status_code: Optional[int] = None
    tokens: int = 0

    @property
    def cancelled(self) -> bool:
        return self.kind == ErrorKind.CANCELLED


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    size: Optional[int] = None
    modified_at: Optional[str] = None
