"""Provider registry: which client owns which model id.

The registry is an ordinary object owned by whoever builds it at startup;
sessions receive it explicitly rather than reaching for shared state.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import httpx

from ..models.conversation import ChatMessage
from ..models.provider import ErrorKind, ModelInfo, StreamResult
from .base import KNOWN_PROVIDERS, OnDelta, ProviderClient, create_provider
from .openai_provider import OPENAI_COMPATIBLE_PRESETS

logger = logging.getLogger(__name__)

DEFAULT_KEY_ENVS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "azure-openai": "AZURE_OPENAI_KEY",
}


class AmbiguousModelError(Exception):
    """More than one registered provider claims a model id."""

    def __init__(self, model_id: str, claimants: list[str]):
        super().__init__(
            f"model {model_id} is claimed by multiple providers: {', '.join(claimants)}"
        )
        self.model_id = model_id
        self.claimants = claimants


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, ProviderClient] = {}

    def register(self, client: ProviderClient) -> None:
        if client.name in self._providers:
            logger.debug("Replacing provider %s", client.name)
        self._providers[client.name] = client

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> Optional[ProviderClient]:
        return self._providers.get(name)

    def list_all(self) -> list[ProviderClient]:
        return list(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def resolve(self, model_id: str) -> Optional[ProviderClient]:
        """Return the single client claiming ``model_id``.

        A provider-prefixed id goes to the provider of that name even when
        another client also claims it. Any other multiple claim raises
        AmbiguousModelError.
        """
        claimants = [p for p in self._providers.values() if p.supports_model(model_id)]
        if not claimants:
            return None
        if len(claimants) == 1:
            return claimants[0]

        prefix, sep, _ = model_id.partition(":")
        if sep:
            for client in claimants:
                if client.name == prefix:
                    return client
        raise AmbiguousModelError(model_id, sorted(c.name for c in claimants))

    async def dispatch(
        self,
        model_id: str,
        messages: list[ChatMessage],
        on_delta: OnDelta,
        cancel_signal: asyncio.Event,
    ) -> StreamResult:
        try:
            client = self.resolve(model_id)
        except AmbiguousModelError as e:
            logger.warning("%s", e)
            return StreamResult(success=False, error=str(e), kind=ErrorKind.CONFIGURATION)

        if client is None:
            return StreamResult(
                success=False,
                error=f"no provider found for model: {model_id}",
                kind=ErrorKind.CONFIGURATION,
            )

        logger.debug("Dispatching %s to %s (%d messages)", model_id, client.name, len(messages))
        return await client.stream_chat(model_id, messages, on_delta, cancel_signal)

    async def list_models(self, provider: Optional[str] = None) -> list[ModelInfo]:
        """Aggregate catalogs across providers, skipping any that fail."""
        clients = self.list_all()
        if provider:
            clients = [c for c in clients if c.name == provider]

        all_models: list[ModelInfo] = []
        for client in clients:
            try:
                all_models.extend(await client.list_models())
            except Exception as e:
                logger.warning("Could not list models for %s: %s", client.name, e)
        return all_models


class ProviderKeys:
    """Answers which providers are configured and enabled."""

    def __init__(self, config: dict):
        self.providers_config = config.get("providers", {})

    def _provider_config(self, name: str) -> dict:
        preset = OPENAI_COMPATIBLE_PRESETS.get(name, {})
        if name in DEFAULT_KEY_ENVS:
            preset = {"api_key_env": DEFAULT_KEY_ENVS[name]}
        return {**preset, **(self.providers_config.get(name) or {})}

    def is_enabled(self, name: str) -> bool:
        return bool(self._provider_config(name).get("enabled", True))

    def is_provider_configured(self, name: str) -> bool:
        if name not in KNOWN_PROVIDERS:
            return False
        if name == "ollama":
            return True

        pc = self._provider_config(name)
        if name == "azure-openai" and not pc.get("endpoint"):
            return False
        if pc.get("api_key"):
            return True
        env_var = pc.get("api_key_env")
        return bool(env_var and os.environ.get(env_var))

    def enabled_providers(self) -> list[str]:
        return [
            name
            for name in KNOWN_PROVIDERS
            if self.is_enabled(name) and self.is_provider_configured(name)
        ]


def build_registry(
    config: dict,
    keys: Optional[ProviderKeys] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Register a client for every enabled, configured provider."""
    keys = keys or ProviderKeys(config)
    registry = ProviderRegistry()
    for name in keys.enabled_providers():
        registry.register(create_provider(name, config, transport=transport))
    logger.debug("Registered providers: %s", ", ".join(p.name for p in registry.list_all()))
    return registry
