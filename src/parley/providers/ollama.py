"""Ollama local inference provider.

Speaks newline-delimited JSON on /api/chat. System messages stay inline and
the token count arrives as ``eval_count`` on the final chunk.
"""

from __future__ import annotations

import asyncio
import json

import httpx

from ..models.conversation import ChatMessage, TokenDelta
from ..models.provider import ModelInfo, StreamResult
from .base import KNOWN_PROVIDERS, BaseProvider, OnDelta, StreamError, StreamState


class OllamaProvider(BaseProvider):
    name = "ollama"

    @property
    def endpoint(self) -> str:
        return self.config.get("endpoint", "http://localhost:11434").rstrip("/")

    def supports_model(self, model_id: str) -> bool:
        if model_id.startswith("ollama:"):
            return True
        # Local tags look like "llama3.1:8b"; anything without a cloud prefix is ours
        return not any(
            model_id.startswith(f"{p}:") for p in KNOWN_PROVIDERS if p != self.name
        )

    async def list_models(self) -> list[ModelInfo]:
        async with self._client() as client:
            response = await client.get(f"{self.endpoint}/api/tags")
            response.raise_for_status()
            data = response.json()

        return [
            ModelInfo(
                id=f"ollama:{m['name']}",
                name=m["name"],
                provider=self.name,
                size=m.get("size"),
                modified_at=m.get("modified_at"),
            )
            for m in data.get("models", [])
        ]

    async def check_health(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.endpoint}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def stream_chat(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        body = {
            "model": self.strip_prefix(model_id),
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
            "options": {
                "num_predict": self.max_tokens,
                "num_ctx": self.config.get("num_ctx", 8192),
            },
        }
        headers = {"Content-Type": "application/json"}

        return await self._stream_post(
            f"{self.endpoint}/api/chat", body, headers, on_delta, cancel_signal
        )

    def decode_line(self, line: str, state: StreamState) -> list[TokenDelta]:
        chunk = json.loads(line)
        if chunk.get("error"):
            raise StreamError(f"ollama error: {chunk['error']}")

        if chunk.get("eval_count"):
            state.tokens = chunk["eval_count"]

        text = (chunk.get("message") or {}).get("content", "")
        done = bool(chunk.get("done"))
        if not text and not done:
            return []
        return [TokenDelta(text=text, is_final=done, tokens=state.tokens)]
