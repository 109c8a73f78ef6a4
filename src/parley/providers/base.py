"""Streaming chat provider abstraction.

Every backend family implements the same three capabilities: stream a chat
completion as normalized token deltas, list the models it can serve, and
answer whether it owns a given model id. Backends differ only in request
shape, stream decoding, how system messages travel, and when token usage
is reported.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, runtime_checkable

import httpx

from ..core.errors import classify_error
from ..models.conversation import ChatMessage, TokenDelta
from ..models.provider import ErrorKind, ModelInfo, StreamResult
from ..utils.sanitize import sanitize_error

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE = ("openai", "deepseek", "groq", "together", "openrouter")
KNOWN_PROVIDERS = ("ollama", "anthropic", "gemini", "azure-openai") + OPENAI_COMPATIBLE

OnDelta = Callable[[TokenDelta], None]


class StreamError(Exception):
    """An error reported by the backend inside an otherwise healthy stream."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@runtime_checkable
class ProviderClient(Protocol):
    """Protocol that all chat providers must implement."""

    name: str

    async def stream_chat(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult: ...

    async def list_models(self) -> list[ModelInfo]: ...

    def supports_model(self, model_id: str) -> bool: ...


@dataclass
class StreamState:
    """Decoding state for one streaming call."""

    tokens: int = 0
    finished: bool = False
    finish_pending: bool = False
    extra: dict = field(default_factory=dict)


class BaseProvider:
    """Base class with shared streaming, catalog and config handling."""

    name: str = "base"
    api_key_env: Optional[str] = None

    def __init__(
        self,
        provider_config: dict,
        common_config: dict,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = provider_config
        self.common = common_config
        self.timeout = common_config.get("timeout_seconds", 300)
        self.max_tokens = provider_config.get("max_tokens") or common_config.get(
            "max_tokens", 4096
        )
        self.transport = transport

    # -- catalog -----------------------------------------------------------

    @property
    def models(self) -> list[str]:
        return list(self.config.get("models") or [])

    def supports_model(self, model_id: str) -> bool:
        if model_id.startswith(f"{self.name}:"):
            return True
        return model_id in self.models

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=f"{self.name}:{m}", name=m, provider=self.name)
            for m in self.models
        ]

    def strip_prefix(self, model_id: str) -> str:
        prefix = f"{self.name}:"
        if model_id.startswith(prefix):
            return model_id[len(prefix):]
        return model_id

    # -- credentials -------------------------------------------------------

    def _get_api_key(self) -> Optional[str]:
        if self.config.get("api_key"):
            return self.config["api_key"]
        env_var = self.config.get("api_key_env", self.api_key_env)
        return os.environ.get(env_var) if env_var else None

    def _missing_key(self) -> StreamResult:
        env_var = self.config.get("api_key_env", self.api_key_env)
        return StreamResult(
            success=False,
            error=f"API key not found in environment variable: {env_var}",
            kind=ErrorKind.AUTH,
        )

    # -- streaming ---------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def stream_chat(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        raise NotImplementedError

    def decode_line(self, line: str, state: StreamState) -> list[TokenDelta]:
        """Decode one non-empty response line into zero or more deltas.

        Raise ValueError (or a subclass) for an undecodable line and
        StreamError for an error the backend reports in-stream.
        """
        raise NotImplementedError

    def end_of_stream(self, state: StreamState) -> Optional[TokenDelta]:
        """Final delta to emit when the body ends without an explicit one."""
        return None

    async def _stream_post(
        self,
        url: str,
        body: dict,
        headers: dict,
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        state = StreamState()
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=headers) as response:
                    if not response.is_success:
                        await response.aread()
                        error_body = response.text
                        status = response.status_code
                        return StreamResult(
                            success=False,
                            error=f"{self.name} API error ({status}): {error_body}",
                            kind=classify_error(status, error_body),
                            status_code=status,
                        )

                    async for raw_line in response.aiter_lines():
                        if cancel_signal.is_set():
                            return self._cancelled(state)
                        line = raw_line.strip()
                        if not line:
                            continue
                        try:
                            deltas = self.decode_line(line, state)
                        except StreamError:
                            raise
                        except (ValueError, KeyError, TypeError, IndexError) as e:
                            logger.warning("%s: skipping malformed stream line (%s)", self.name, e)
                            continue
                        for delta in deltas:
                            on_delta(delta)
                            if delta.is_final:
                                state.finished = True
                                return StreamResult(success=True, tokens=state.tokens)

            if cancel_signal.is_set():
                return self._cancelled(state)
            final = self.end_of_stream(state)
            if final is not None:
                on_delta(final)
                return StreamResult(success=True, tokens=state.tokens)
            return StreamResult(
                success=False,
                error=f"{self.name} stream ended before completion",
                kind=ErrorKind.TRANSPORT,
                tokens=state.tokens,
            )
        except StreamError as e:
            return StreamResult(
                success=False,
                error=str(e),
                kind=classify_error(e.status_code, str(e)) if e.status_code else ErrorKind.PROVIDER,
                status_code=e.status_code,
                tokens=state.tokens,
            )
        except httpx.HTTPError as e:
            if cancel_signal.is_set():
                return self._cancelled(state)
            message = str(e) or e.__class__.__name__
            logger.debug("%s transport error: %s", self.name, sanitize_error(message))
            return StreamResult(
                success=False,
                error=f"failed to connect to {self.name}: {message}",
                kind=ErrorKind.TRANSPORT,
                tokens=state.tokens,
            )
        except Exception as e:
            return StreamResult(
                success=False, error=str(e), kind=ErrorKind.PROVIDER, tokens=state.tokens
            )

    def _cancelled(self, state: StreamState) -> StreamResult:
        return StreamResult(
            success=False,
            error="context canceled",
            kind=ErrorKind.CANCELLED,
            tokens=state.tokens,
        )

    # -- key validation ----------------------------------------------------

    async def validate_key(self) -> Optional[str]:
        """Probe the backend with the configured key. Returns an error or None."""
        return None

    async def _probe(
        self,
        method: str,
        url: str,
        headers: dict,
        json: Optional[dict] = None,
        accept: tuple[int, ...] = (200,),
    ) -> Optional[str]:
        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            return f"failed to connect to {self.name}: {e}"

        if response.status_code == 401:
            return "invalid API key"
        if response.status_code == 403:
            return "API key does not have permission"
        if response.status_code not in accept:
            return f"API error ({response.status_code}): {response.text}"
        return None


def create_provider(
    name: str,
    config: dict,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseProvider:
    """Factory function to create a configured provider by name."""
    providers_config = config.get("providers", {})

    provider_config = dict(providers_config.get(name, {}))

    # Common config is the providers section minus per-provider sub-configs
    common_config = {
        k: v for k, v in providers_config.items() if k not in KNOWN_PROVIDERS
    }

    if name == "ollama":
        from .ollama import OllamaProvider
        return OllamaProvider(provider_config, common_config, transport=transport)
    elif name == "anthropic":
        from .anthropic import AnthropicProvider
        return AnthropicProvider(provider_config, common_config, transport=transport)
    elif name == "gemini":
        from .gemini import GeminiProvider
        return GeminiProvider(provider_config, common_config, transport=transport)
    elif name == "azure-openai":
        from .azure_openai import AzureOpenAIProvider
        return AzureOpenAIProvider(provider_config, common_config, transport=transport)
    elif name in OPENAI_COMPATIBLE:
        from .openai_provider import OpenAICompatibleProvider
        return OpenAICompatibleProvider(
            provider_config, common_config, name=name, transport=transport
        )
    else:
        raise ValueError(f"Unknown AI provider: {name}")
