"""Azure OpenAI API provider.

Same stream format as OpenAI; routing is by deployment and auth uses the
``api-key`` header.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from ..models.conversation import ChatMessage
from ..models.provider import ErrorKind, StreamResult
from .base import OnDelta
from .openai_provider import OpenAICompatibleProvider


class AzureOpenAIProvider(OpenAICompatibleProvider):
    def __init__(
        self,
        provider_config: dict,
        common_config: dict,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = {"api_key_env": "AZURE_OPENAI_KEY", **provider_config}
        super().__init__(config, common_config, name="azure-openai", transport=transport)

    @property
    def models(self) -> list[str]:
        return list(self.config.get("deployments") or [])

    def _chat_url(self, model: str) -> str:
        endpoint = self.config.get("endpoint", "").rstrip("/")
        api_version = self.config.get("api_version", "2024-10-01-preview")
        return (
            f"{endpoint}/openai/deployments/{model}"
            f"/chat/completions?api-version={api_version}"
        )

    def _headers(self, api_key: str) -> dict:
        return {
            "api-key": api_key,
            "Content-Type": "application/json",
        }

    def _body(self, model: str, messages: list[ChatMessage]) -> dict:
        body = super()._body(model, messages)
        # The deployment in the URL selects the model
        body.pop("model")
        body["max_tokens"] = self.max_tokens
        return body

    async def stream_chat(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        if not self.config.get("endpoint"):
            return StreamResult(
                success=False,
                error="Azure OpenAI endpoint not configured",
                kind=ErrorKind.CONFIGURATION,
            )
        return await super().stream_chat(model_id, messages, on_delta, cancel_signal)

    async def validate_key(self) -> Optional[str]:
        api_key = self._get_api_key()
        if not api_key:
            return "API key not configured"
        endpoint = self.config.get("endpoint", "").rstrip("/")
        if not endpoint:
            return "Azure OpenAI endpoint not configured"
        api_version = self.config.get("api_version", "2024-10-01-preview")
        return await self._probe(
            "GET",
            f"{endpoint}/openai/deployments?api-version={api_version}",
            headers={"api-key": api_key},
            accept=(200, 404),
        )
