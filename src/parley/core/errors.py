"""Provider error classification and user-facing descriptions."""

from __future__ import annotations

from typing import Optional

from ..models.provider import ErrorKind, StreamResult
from ..utils.sanitize import sanitize_error

PROVIDER_DISPLAY_NAMES = {
    "anthropic": "Anthropic",
    "gemini": "Google Gemini",
    "openai": "OpenAI",
    "azure-openai": "Azure OpenAI",
    "groq": "Groq",
    "deepseek": "DeepSeek",
    "together": "Together AI",
    "openrouter": "OpenRouter",
    "ollama": "Ollama",
}


def classify_error(status_code: Optional[int], message: str = "") -> ErrorKind:
    """Map an HTTP status (or a bare transport message) onto the taxonomy."""
    lowered = (message or "").lower()
    if status_code is None:
        if "quota" in lowered or ("rate" in lowered and "limit" in lowered):
            return ErrorKind.RATE_LIMIT
        return ErrorKind.TRANSPORT
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 402 or "quota" in lowered:
        return ErrorKind.RATE_LIMIT
    if status_code == 400 and ("api key" in lowered or "api_key" in lowered):
        return ErrorKind.AUTH
    return ErrorKind.PROVIDER


def _provider_label(model_id: str) -> str:
    prefix, sep, _ = model_id.partition(":")
    if sep and prefix in PROVIDER_DISPLAY_NAMES:
        return PROVIDER_DISPLAY_NAMES[prefix]
    return "the provider"


def describe_error(result: StreamResult, model_id: str) -> str:
    """Turn a failed stream result into a message a user can act on."""
    provider = _provider_label(model_id)
    raw = sanitize_error(result.error or "")
    lowered = raw.lower()

    if result.kind == ErrorKind.CANCELLED or "context canceled" in lowered:
        return "Stopped by user."
    if result.kind == ErrorKind.CONFIGURATION:
        return raw or f"No provider is configured for model '{model_id}'."

    if "quota" in lowered or result.status_code == 429:
        if "limit: 0" in lowered or 'limit":0' in lowered:
            return (
                f"This model has no free tier access on {provider}. "
                f"Try a different model or enable billing."
            )
        return f"Quota exceeded for {provider}. Wait a bit or check your plan."
    if result.kind == ErrorKind.RATE_LIMIT or ("rate" in lowered and "limit" in lowered):
        return f"Rate limit reached for {provider}. Please wait a moment before trying again."

    if "credit" in lowered and ("balance" in lowered or "low" in lowered):
        return f"{provider} requires credits. Add credits on the provider's billing page."

    if "invalid" in lowered and ("key" in lowered or "api" in lowered):
        return f"Invalid API key for {provider}. Check the key configured for it."
    if result.kind == ErrorKind.AUTH or "unauthorized" in lowered or "authentication" in lowered:
        return f"Authentication failed for {provider}. Verify the configured API key."

    if result.kind == ErrorKind.NOT_FOUND or "not found" in lowered or "does not exist" in lowered:
        return (
            f"Model not found. '{model_id}' may have been deprecated or renamed. "
            f"Try selecting a different model."
        )

    if result.kind == ErrorKind.TRANSPORT or any(
        word in lowered for word in ("connection", "timeout", "network")
    ):
        return f"Connection error with {provider}: {raw}" if raw else f"Connection error with {provider}."

    return f"{provider} error: {raw}"
