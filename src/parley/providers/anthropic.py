"""Anthropic Claude Messages API provider.

System messages are lifted out of the conversation into the top-level
``system`` field. Output token usage only arrives on ``message_delta``,
near the end of the stream.
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

from ..models.conversation import ChatMessage, TokenDelta
from ..models.provider import StreamResult
from .base import BaseProvider, OnDelta, StreamError, StreamState

ANTHROPIC_MODELS = [
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
]


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    API_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    @property
    def models(self) -> list[str]:
        return list(self.config.get("models") or ANTHROPIC_MODELS)

    @property
    def api_url(self) -> str:
        return self.config.get("endpoint", self.API_URL)

    def _headers(self, api_key: str) -> dict:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

    async def stream_chat(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        api_key = self._get_api_key()
        if not api_key:
            return self._missing_key()

        system_parts = [m.content for m in messages if m.role == "system"]
        body = {
            "model": self.strip_prefix(model_id),
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in messages
                if m.role != "system"
            ],
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)

        return await self._stream_post(
            self.api_url, body, self._headers(api_key), on_delta, cancel_signal
        )

    def decode_line(self, line: str, state: StreamState) -> list[TokenDelta]:
        # "event:" lines duplicate the type carried in the data payload
        if not line.startswith("data:"):
            return []
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return [TokenDelta(text="", is_final=True, tokens=state.tokens)]

        event = json.loads(data)
        event_type = event.get("type")

        if event_type == "content_block_delta":
            text = (event.get("delta") or {}).get("text", "")
            return [TokenDelta(text=text, tokens=state.tokens)] if text else []
        if event_type == "message_delta":
            usage = event.get("usage") or {}
            if usage.get("output_tokens"):
                state.tokens = usage["output_tokens"]
            return []
        if event_type == "message_stop":
            return [TokenDelta(text="", is_final=True, tokens=state.tokens)]
        if event_type == "error":
            error = event.get("error") or {}
            raise StreamError(
                f"Anthropic {error.get('type', 'error')}: {error.get('message', data)}",
                status_code=529 if error.get("type") == "overloaded_error" else None,
            )
        return []

    async def validate_key(self) -> Optional[str]:
        api_key = self._get_api_key()
        if not api_key:
            return "API key not configured"
        return await self._probe(
            "POST",
            self.api_url,
            headers=self._headers(api_key),
            json={
                "model": "claude-3-5-haiku-20241022",
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "hi"}],
            },
            accept=(200, 400),
        )
