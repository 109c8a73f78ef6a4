"""Tests for providers/."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from parley.models.conversation import ChatMessage
from parley.models.provider import ErrorKind
from parley.providers.anthropic import AnthropicProvider
from parley.providers.azure_openai import AzureOpenAIProvider
from parley.providers.base import create_provider
from parley.providers.gemini import GeminiProvider
from parley.providers.ollama import OllamaProvider
from parley.providers.openai_provider import OpenAICompatibleProvider

MESSAGES = [
    ChatMessage(role="system", content="Your name is Test."),
    ChatMessage(role="user", content="hi"),
]


def _transport(body: str, status: int = 200, seen: list | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, content=body.encode())

    return httpx.MockTransport(handler)


def _sse(*events: dict | str) -> str:
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines)


def _ndjson(*chunks: dict) -> str:
    return "".join(json.dumps(c) + "\n" for c in chunks)


async def _collect(provider, model_id: str, cancel: asyncio.Event | None = None):
    deltas = []
    result = await provider.stream_chat(
        model_id, MESSAGES, deltas.append, cancel or asyncio.Event()
    )
    return result, deltas


class TestCreateProvider:
    def test_anthropic_provider(self):
        provider = create_provider("anthropic", {"providers": {"anthropic": {"api_key": "k"}}})
        assert provider.name == "anthropic"

    def test_openai_compatible_presets(self):
        for name in ("openai", "deepseek", "groq", "together", "openrouter"):
            provider = create_provider(name, {"providers": {}})
            assert provider.name == name
            assert provider.base_url.startswith("https://")

    def test_azure_provider(self):
        config = {"providers": {"azure-openai": {"endpoint": "https://x.openai.azure.com"}}}
        assert create_provider("azure-openai", config).name == "azure-openai"

    def test_ollama_provider(self):
        assert create_provider("ollama", {"providers": {}}).name == "ollama"

    def test_invalid_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown"):
            create_provider("invalid", {"providers": {}})

    def test_common_config_shared(self):
        config = {"providers": {"timeout_seconds": 12, "max_tokens": 99, "gemini": {}}}
        provider = create_provider("gemini", config)
        assert provider.timeout == 12
        assert provider.max_tokens == 99


class TestModelClaims:
    def test_ollama_claims_local_tags(self):
        provider = OllamaProvider({}, {})
        assert provider.supports_model("llama3.1:8b")
        assert provider.supports_model("ollama:llama3")
        assert not provider.supports_model("anthropic:claude-3-opus-20240229")

    def test_openai_claims_prefix_and_catalog(self):
        provider = OpenAICompatibleProvider({}, {}, name="groq")
        assert provider.supports_model("groq:anything")
        assert provider.supports_model("llama-3.1-8b-instant")
        assert not provider.supports_model("gpt-4o")

    def test_azure_claims_deployments(self):
        provider = AzureOpenAIProvider({"deployments": ["prod-gpt"]}, {})
        assert provider.supports_model("prod-gpt")
        assert provider.supports_model("azure-openai:other")

    @pytest.mark.asyncio
    async def test_static_catalog_prefixed(self):
        models = await GeminiProvider({}, {}).list_models()
        assert models[0].id.startswith("gemini:")
        assert all(m.provider == "gemini" for m in models)

    @pytest.mark.asyncio
    async def test_ollama_catalog_from_tags(self):
        body = json.dumps({"models": [{"name": "llama3:8b", "size": 42}]})
        provider = OllamaProvider({}, {}, transport=_transport(body))
        models = await provider.list_models()
        assert [m.id for m in models] == ["ollama:llama3:8b"]
        assert models[0].size == 42


class TestOllamaStreaming:
    @pytest.mark.asyncio
    async def test_streams_and_counts_tokens(self):
        seen = []
        body = _ndjson(
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True, "eval_count": 7},
        )
        provider = OllamaProvider({}, {"max_tokens": 50}, transport=_transport(body, seen=seen))
        result, deltas = await _collect(provider, "ollama:llama3")

        assert result.success
        assert result.tokens == 7
        assert "".join(d.text for d in deltas) == "Hello"
        assert deltas[-1].is_final
        sent = json.loads(seen[0].content)
        assert sent["model"] == "llama3"
        assert sent["options"]["num_predict"] == 50
        assert sent["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_malformed_line_skipped(self):
        body = (
            _ndjson({"message": {"content": "a"}, "done": False})
            + "{not json\n"
            + _ndjson({"message": {"content": "b"}, "done": True})
        )
        provider = OllamaProvider({}, {}, transport=_transport(body))
        result, deltas = await _collect(provider, "llama3")
        assert result.success
        assert "".join(d.text for d in deltas) == "ab"

    @pytest.mark.asyncio
    async def test_in_stream_error(self):
        body = _ndjson({"error": "model not loaded"})
        provider = OllamaProvider({}, {}, transport=_transport(body))
        result, _ = await _collect(provider, "llama3")
        assert not result.success
        assert "model not loaded" in result.error

    @pytest.mark.asyncio
    async def test_eof_without_final_fails_after_partial(self):
        body = _ndjson({"message": {"content": "partial"}, "done": False})
        provider = OllamaProvider({}, {}, transport=_transport(body))
        result, deltas = await _collect(provider, "llama3")
        assert not result.success
        assert result.kind == ErrorKind.TRANSPORT
        assert "ended before completion" in result.error
        assert deltas[0].text == "partial"

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        provider = OllamaProvider({}, {}, transport=httpx.MockTransport(handler))
        result, _ = await _collect(provider, "llama3")
        assert result.kind == ErrorKind.TRANSPORT
        assert "failed to connect to ollama" in result.error

    @pytest.mark.asyncio
    async def test_check_health(self):
        provider = OllamaProvider({}, {}, transport=_transport('{"models": []}'))
        assert await provider.check_health()


class TestOpenAIStreaming:
    @pytest.mark.asyncio
    async def test_streams_with_usage(self):
        seen = []
        body = _sse(
            {"choices": [{"delta": {"content": "Hi"}, "finish_reason": None}]},
            {"choices": [{"delta": {"content": " there"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"total_tokens": 12}},
            "[DONE]",
        )
        provider = OpenAICompatibleProvider(
            {"api_key": "sk-test"}, {}, transport=_transport(body, seen=seen)
        )
        result, deltas = await _collect(provider, "openai:gpt-4o")

        assert result.success
        assert result.tokens == 12
        assert "".join(d.text for d in deltas) == "Hi there"
        assert deltas[-1].is_final
        request = seen[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        sent = json.loads(request.content)
        assert sent["model"] == "gpt-4o"
        assert sent["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_finish_reason_then_eof_completes(self):
        body = _sse({"choices": [{"delta": {"content": "x"}, "finish_reason": "stop"}]})
        provider = OpenAICompatibleProvider({"api_key": "k"}, {}, transport=_transport(body))
        result, deltas = await _collect(provider, "gpt-4o")
        assert result.success
        assert deltas[-1].is_final

    @pytest.mark.asyncio
    async def test_include_usage_can_be_disabled(self):
        seen = []
        provider = OpenAICompatibleProvider(
            {"api_key": "k", "include_usage": False}, {}, transport=_transport(_sse("[DONE]"), seen=seen)
        )
        await _collect(provider, "gpt-4o")
        assert "stream_options" not in json.loads(seen[0].content)

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = OpenAICompatibleProvider({}, {})
        result, _ = await _collect(provider, "gpt-4o")
        assert result.kind == ErrorKind.AUTH
        assert "OPENAI_API_KEY" in result.error

    @pytest.mark.asyncio
    async def test_unauthorized_status(self):
        body = '{"error": {"message": "Incorrect API key provided"}}'
        provider = OpenAICompatibleProvider({"api_key": "k"}, {}, transport=_transport(body, 401))
        result, deltas = await _collect(provider, "gpt-4o")
        assert not result.success
        assert result.kind == ErrorKind.AUTH
        assert result.status_code == 401
        assert "(401)" in result.error
        assert deltas == []

    @pytest.mark.asyncio
    async def test_rate_limited_status(self):
        provider = OpenAICompatibleProvider(
            {"api_key": "k"}, {}, transport=_transport("slow down", 429)
        )
        result, _ = await _collect(provider, "gpt-4o")
        assert result.kind == ErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_cancel_before_next_line(self):
        cancel = asyncio.Event()
        deltas = []

        def on_delta(delta):
            deltas.append(delta)
            cancel.set()

        body = _sse(
            {"choices": [{"delta": {"content": "one"}}]},
            {"choices": [{"delta": {"content": "two"}}]},
            "[DONE]",
        )
        provider = OpenAICompatibleProvider({"api_key": "k"}, {}, transport=_transport(body))
        result = await provider.stream_chat("gpt-4o", MESSAGES, on_delta, cancel)

        assert result.cancelled
        assert [d.text for d in deltas] == ["one"]


class TestAzureStreaming:
    @pytest.mark.asyncio
    async def test_deployment_url_and_header(self):
        seen = []
        config = {
            "api_key": "azkey",
            "endpoint": "https://res.openai.azure.com/",
            "api_version": "2024-10-01-preview",
        }
        provider = AzureOpenAIProvider(
            config, {"max_tokens": 64}, transport=_transport(_sse("[DONE]"), seen=seen)
        )
        result, _ = await _collect(provider, "azure-openai:prod-gpt")

        assert result.success
        request = seen[0]
        assert str(request.url) == (
            "https://res.openai.azure.com/openai/deployments/prod-gpt"
            "/chat/completions?api-version=2024-10-01-preview"
        )
        assert request.headers["api-key"] == "azkey"
        assert "Authorization" not in request.headers
        sent = json.loads(request.content)
        assert "model" not in sent
        assert sent["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        provider = AzureOpenAIProvider({"api_key": "k"}, {})
        result, _ = await _collect(provider, "prod-gpt")
        assert result.kind == ErrorKind.CONFIGURATION


class TestAnthropicStreaming:
    @pytest.mark.asyncio
    async def test_streams_and_lifts_system(self):
        seen = []
        body = (
            "event: message_start\n"
            + _sse(
                {"type": "message_start", "message": {}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hello"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " world"}},
                {"type": "message_delta", "usage": {"output_tokens": 9}},
                {"type": "message_stop"},
            )
        )
        provider = AnthropicProvider({"api_key": "sk-ant-x"}, {}, transport=_transport(body, seen=seen))
        result, deltas = await _collect(provider, "anthropic:claude-3-5-haiku-20241022")

        assert result.success
        assert result.tokens == 9
        assert "".join(d.text for d in deltas) == "Hello world"
        request = seen[0]
        assert request.headers["x-api-key"] == "sk-ant-x"
        assert request.headers["anthropic-version"] == "2023-06-01"
        sent = json.loads(request.content)
        assert sent["system"] == "Your name is Test."
        assert [m["role"] for m in sent["messages"]] == ["user"]
        assert sent["model"] == "claude-3-5-haiku-20241022"

    @pytest.mark.asyncio
    async def test_error_event(self):
        body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        provider = AnthropicProvider({"api_key": "k"}, {}, transport=_transport(body))
        result, _ = await _collect(provider, "anthropic:claude-3-opus-20240229")
        assert not result.success
        assert "Overloaded" in result.error
        assert result.status_code == 529


class TestGeminiStreaming:
    @pytest.mark.asyncio
    async def test_streams_with_system_instruction(self):
        seen = []
        body = _sse(
            {"candidates": [{"content": {"parts": [{"text": "Bon"}]}}]},
            {
                "candidates": [{"content": {"parts": [{"text": "jour"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"totalTokenCount": 15},
            },
        )
        provider = GeminiProvider({"api_key": "AIzaTest"}, {}, transport=_transport(body, seen=seen))
        result, deltas = await _collect(provider, "gemini:gemini-2.0-flash")

        assert result.success
        assert result.tokens == 15
        assert "".join(d.text for d in deltas) == "Bonjour"
        request = seen[0]
        assert request.url.path.endswith("/models/gemini-2.0-flash:streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        assert request.headers["x-goog-api-key"] == "AIzaTest"
        assert "key" not in request.url.params
        sent = json.loads(request.content)
        assert sent["systemInstruction"]["parts"][0]["text"] == "Your name is Test."
        assert [c["role"] for c in sent["contents"]] == ["user"]

    @pytest.mark.asyncio
    async def test_assistant_role_mapped_to_model(self):
        seen = []
        provider = GeminiProvider(
            {"api_key": "k"},
            {},
            transport=_transport(_sse({"candidates": [{"finishReason": "STOP"}]}), seen=seen),
        )
        messages = [
            ChatMessage(role="user", content="a"),
            ChatMessage(role="assistant", content="b"),
        ]
        await provider.stream_chat("gemini-2.0-flash", messages, lambda d: None, asyncio.Event())
        sent = json.loads(seen[0].content)
        assert [c["role"] for c in sent["contents"]] == ["user", "model"]

    @pytest.mark.asyncio
    async def test_not_found_status(self):
        provider = GeminiProvider(
            {"api_key": "k"}, {}, transport=_transport('{"error": "not found"}', 404)
        )
        result, _ = await _collect(provider, "gemini:gemini-0")
        assert result.kind == ErrorKind.NOT_FOUND


class TestValidateKey:
    @pytest.mark.asyncio
    async def test_openai_bad_key(self):
        provider = OpenAICompatibleProvider({"api_key": "k"}, {}, transport=_transport("", 401))
        assert await provider.validate_key() == "invalid API key"

    @pytest.mark.asyncio
    async def test_anthropic_accepts_bad_request(self):
        provider = AnthropicProvider({"api_key": "k"}, {}, transport=_transport("{}", 400))
        assert await provider.validate_key() is None

    @pytest.mark.asyncio
    async def test_gemini_bad_request_means_bad_key(self):
        provider = GeminiProvider({"api_key": "k"}, {}, transport=_transport("{}", 400))
        assert await provider.validate_key() == "invalid API key"

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        assert await GeminiProvider({}, {}).validate_key() == "API key not configured"
