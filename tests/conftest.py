"""Shared fixtures for parley tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from parley.models.agent import AgentConfig, AgentRole, Roster
from parley.models.conversation import ChatMessage, TokenDelta
from parley.models.events import StreamEvent
from parley.models.provider import ErrorKind, ModelInfo, StreamResult
from parley.providers.registry import ProviderRegistry


class ScriptedProvider:
    """In-memory provider that replays scripted chunks per model id.

    A script entry is a list of text chunks; the last chunk is delivered as
    the final delta. A StreamResult entry is returned as-is after any chunks
    listed under ``partial``.
    """

    name = "fake"

    def __init__(self, scripts: Optional[dict] = None):
        self.scripts = scripts or {}
        self.partial: dict[str, list[str]] = {}
        self.calls: list[tuple[str, list[ChatMessage]]] = []
        self.gate: Optional[asyncio.Event] = None
        self.gate_after = 1

    def supports_model(self, model_id: str) -> bool:
        return model_id.startswith("fake:")

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=model_id, name=model_id.split(":", 1)[1], provider=self.name)
            for model_id in self.scripts
        ]

    async def stream_chat(self, model_id, messages, on_delta, cancel_signal) -> StreamResult:
        self.calls.append((model_id, list(messages)))
        script = self.scripts.get(model_id, ["ok"])

        chunks = self.partial.get(model_id, []) if isinstance(script, StreamResult) else script
        tokens = 0
        for i, text in enumerate(chunks):
            if cancel_signal.is_set():
                return StreamResult(success=False, error="context canceled", kind=ErrorKind.CANCELLED)
            if self.gate is not None and i == self.gate_after:
                await self.gate.wait()
            tokens += 1
            is_final = not isinstance(script, StreamResult) and i == len(chunks) - 1
            on_delta(TokenDelta(text=text, is_final=is_final, tokens=tokens))

        if isinstance(script, StreamResult):
            return script
        return StreamResult(success=True, tokens=tokens)


class EventRecorder:
    """Async event sink that keeps every emitted event."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    async def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def of_type(self, kind: str) -> list[StreamEvent]:
        return [e for e in self.events if e.type == kind]

    def text_for(self, short_id: str) -> str:
        return "".join(
            e.content or "" for e in self.events if e.type == "chunk" and e.model_id == short_id
        )


@pytest.fixture
def home(tmp_path: Path, monkeypatch) -> Path:
    """Point PARLEY_HOME at an empty temporary directory."""
    home = tmp_path / "parley-home"
    home.mkdir()
    monkeypatch.setenv("PARLEY_HOME", str(home))
    return home


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        "providers:\n  timeout_seconds: 30\n  ollama:\n    num_ctx: 4096\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def coder() -> AgentConfig:
    return AgentConfig(model_id="fake:coder", name="Coder", short_id="a1", role=AgentRole.CODER)


@pytest.fixture
def reviewer() -> AgentConfig:
    return AgentConfig(
        model_id="fake:reviewer", name="Reviewer", short_id="b1", role=AgentRole.REVIEWER
    )


@pytest.fixture
def pair_roster(coder: AgentConfig, reviewer: AgentConfig) -> Roster:
    return Roster(agents=[coder, reviewer], autonomy_rounds=0)


@pytest.fixture
def fake_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def registry(fake_provider: ScriptedProvider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(fake_provider)
    return reg


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
