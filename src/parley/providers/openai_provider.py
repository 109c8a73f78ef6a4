"""OpenAI-compatible chat completions provider.

Serves OpenAI itself plus every backend that speaks the same server-sent
event protocol (DeepSeek, Groq, Together, OpenRouter).
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import httpx

from ..models.conversation import ChatMessage, TokenDelta
from ..models.provider import StreamResult
from .base import BaseProvider, OnDelta, StreamError, StreamState

OPENAI_COMPATIBLE_PRESETS: dict[str, dict] = {
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
        "models": ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"],
    },
    "deepseek": {
        "base_url": "https://api.deepseek.com",
        "api_key_env": "DEEPSEEK_API_KEY",
        "models": ["deepseek-chat", "deepseek-coder"],
    },
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "api_key_env": "GROQ_API_KEY",
        "models": [
            "llama-3.3-70b-versatile",
            "llama-3.1-8b-instant",
            "mixtral-8x7b-32768",
            "gemma2-9b-it",
        ],
    },
    "together": {
        "base_url": "https://api.together.xyz/v1",
        "api_key_env": "TOGETHER_API_KEY",
        "models": [
            "meta-llama/Llama-3.3-70B-Instruct-Turbo",
            "meta-llama/Llama-3.2-3B-Instruct-Turbo",
            "mistralai/Mixtral-8x7B-Instruct-v0.1",
        ],
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "models": [
            "openai/gpt-4o",
            "anthropic/claude-3.5-sonnet",
            "google/gemini-pro-1.5",
            "meta-llama/llama-3.3-70b-instruct",
        ],
    },
}

DONE_SENTINEL = "[DONE]"


class OpenAICompatibleProvider(BaseProvider):
    name = "openai"

    def __init__(
        self,
        provider_config: dict,
        common_config: dict,
        name: str = "openai",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        preset = OPENAI_COMPATIBLE_PRESETS.get(name, {})
        merged = {**preset, **{k: v for k, v in provider_config.items() if v is not None}}
        super().__init__(merged, common_config, transport=transport)
        self.name = name
        self.api_key_env = merged.get("api_key_env")

    @property
    def base_url(self) -> str:
        return self.config.get("base_url", "").rstrip("/")

    def _chat_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self, api_key: str) -> dict:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, model: str, messages: list[ChatMessage]) -> dict:
        body = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
        }
        if self.config.get("include_usage", True):
            body["stream_options"] = {"include_usage": True}
        return body

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

        model = self.strip_prefix(model_id)
        return await self._stream_post(
            self._chat_url(model),
            self._body(model, messages),
            self._headers(api_key),
            on_delta,
            cancel_signal,
        )

    def decode_line(self, line: str, state: StreamState) -> list[TokenDelta]:
        if not line.startswith("data:"):
            return []
        data = line[len("data:"):].strip()
        if data == DONE_SENTINEL:
            return [TokenDelta(text="", is_final=True, tokens=state.tokens)]

        chunk = json.loads(data)
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise StreamError(f"{self.name} error: {message}")

        usage = chunk.get("usage")
        if usage and usage.get("total_tokens"):
            state.tokens = usage["total_tokens"]

        choices = chunk.get("choices") or []
        if not choices:
            return []

        text = (choices[0].get("delta") or {}).get("content") or ""
        if choices[0].get("finish_reason") is not None:
            # Usage, when requested, follows in a trailing chunk before [DONE]
            state.finish_pending = True
        return [TokenDelta(text=text, is_final=False, tokens=state.tokens)] if text else []

    def end_of_stream(self, state: StreamState) -> Optional[TokenDelta]:
        if state.finish_pending:
            return TokenDelta(text="", is_final=True, tokens=state.tokens)
        return None

    async def validate_key(self) -> Optional[str]:
        api_key = self._get_api_key()
        if not api_key:
            return "API key not configured"
        return await self._probe(
            "GET",
            f"{self.base_url}/models",
            headers={"Authorization": f"Bearer {api_key}"},
            accept=(200, 404),
        )
