"""Google Gemini provider (streamGenerateContent over server-sent events)."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

from ..models.conversation import ChatMessage, TokenDelta
from ..models.provider import StreamResult
from .base import BaseProvider, OnDelta, StreamError, StreamState

GEMINI_MODELS = [
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
]


class GeminiProvider(BaseProvider):
    name = "gemini"
    api_key_env = "GEMINI_API_KEY"
    API_BASE = "https://generativelanguage.googleapis.com/v1beta"

    @property
    def models(self) -> list[str]:
        return list(self.config.get("models") or GEMINI_MODELS)

    @property
    def api_base(self) -> str:
        return self.config.get("endpoint", self.API_BASE).rstrip("/")

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

        contents = []
        system_instruction = None
        for m in messages:
            if m.role == "system":
                system_instruction = {"parts": [{"text": m.content}]}
            else:
                contents.append(
                    {
                        "role": "model" if m.role == "assistant" else "user",
                        "parts": [{"text": m.content}],
                    }
                )

        body: dict = {
            "contents": contents,
            "generationConfig": {"maxOutputTokens": self.max_tokens},
        }
        if system_instruction:
            body["systemInstruction"] = system_instruction

        model = self.strip_prefix(model_id)
        url = f"{self.api_base}/models/{model}:streamGenerateContent?alt=sse"
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }
        return await self._stream_post(url, body, headers, on_delta, cancel_signal)

    def decode_line(self, line: str, state: StreamState) -> list[TokenDelta]:
        if not line.startswith("data:"):
            return []
        response = json.loads(line[len("data:"):].strip())

        if response.get("error"):
            error = response["error"]
            raise StreamError(
                f"Gemini error: {error.get('message', error)}",
                status_code=error.get("code"),
            )

        usage = response.get("usageMetadata")
        if usage and usage.get("totalTokenCount"):
            state.tokens = usage["totalTokenCount"]

        candidates = response.get("candidates") or []
        if not candidates:
            return []

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        finished = bool(candidate.get("finishReason"))

        deltas = []
        if text:
            deltas.append(TokenDelta(text=text, tokens=state.tokens))
        if finished:
            deltas.append(TokenDelta(text="", is_final=True, tokens=state.tokens))
        return deltas

    async def validate_key(self) -> Optional[str]:
        api_key = self._get_api_key()
        if not api_key:
            return "API key not configured"
        error = await self._probe(
            "GET", f"{self.api_base}/models", headers={"x-goog-api-key": api_key}
        )
        if error and error.startswith("API error (400)"):
            return "invalid API key"
        return error
