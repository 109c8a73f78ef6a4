"""Live session stream controller.

Drives one orchestration run: walks the responding agents one at a time,
dispatches each through the provider registry, batches streamed deltas for
delivery and commits finished turns to history.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from ..models.agent import AgentConfig, Roster
from ..models.conversation import USER_SPEAKER, ChatMessage, ConversationTurn, TokenDelta
from ..models.events import StreamEvent
from ..models.provider import ErrorKind, StreamResult
from ..providers.registry import ProviderRegistry
from ..utils.sanitize import sanitize_error
from .errors import describe_error
from .orchestrator import ConversationOrchestrator, RunState

if TYPE_CHECKING:
    from .store import SessionStore

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], Awaitable[None]]

STOPPED_MARKER = "\n\n*[Response stopped by user]*"
DEFAULT_FLUSH_INTERVAL = 0.025
DEFAULT_PAUSE_POLL = 0.1


def tokens_per_second(tokens: int, elapsed: float) -> float:
    """Generation rate over wall time since dispatch, paused time included."""
    if tokens <= 0 or elapsed <= 0:
        return 0.0
    return tokens / elapsed


class DeltaCoalescer:
    """Collects token deltas between delivery flushes."""

    def __init__(self) -> None:
        self.text = ""
        self.pending = ""
        self.tokens = 0

    def add(self, delta: TokenDelta) -> None:
        self.text += delta.text
        self.pending += delta.text
        self.tokens = max(self.tokens, delta.tokens)

    def drain(self) -> str:
        batch, self.pending = self.pending, ""
        return batch


class SessionStreamController:
    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        registry: ProviderRegistry,
        sink: EventSink,
        store: Optional[SessionStore] = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        pause_poll_interval: float = DEFAULT_PAUSE_POLL,
    ):
        self.orchestrator = orchestrator
        self.registry = registry
        self.sink = sink
        self.store = store
        self.flush_interval = flush_interval
        self.pause_poll_interval = pause_poll_interval

    # -- whole run -------------------------------------------------------

    async def run(self, utterance: str, mentions: Optional[list[str]] = None) -> RunState:
        """Run one user utterance through round 0 and any autonomy rounds."""
        orch = self.orchestrator
        roster = orch.snapshot()
        run = orch.start_run()

        self._commit(ConversationTurn(speaker=USER_SPEAKER, content=utterance))

        await self.sink(StreamEvent(type="round_start", round=0))
        agents, prompt = orch.select_agents(utterance, mentions, roster)
        logger.debug(
            "Round 0 responders: %s", ", ".join(a.short_id for a in agents) or "none"
        )
        await self._run_round(agents, prompt, 0, run, roster)
        await self.sink(StreamEvent(type="round_end", round=0))

        if roster.autonomy_rounds > 0 and len(roster.agents) >= 2 and not run.stopped:
            for round_number in range(1, roster.autonomy_rounds + 1):
                if run.stopped:
                    break
                await self.sink(StreamEvent(type="round_start", round=round_number))
                await self._run_round(roster.agents, "", round_number, run, roster)
                await self.sink(StreamEvent(type="round_end", round=round_number))
                if run.stopped:
                    break

                orch.checkpoint(run)
                await self.sink(StreamEvent(type="checkpoint", round=round_number))
                await self.sink(StreamEvent(type="paused"))
                if round_number < roster.autonomy_rounds:
                    await run.wait_while_paused(self.pause_poll_interval)

        await self.sink(StreamEvent(type="token_usage", usage=orch.token_usage(roster)))
        orch.finish_run(run)
        return run

    async def _run_round(
        self,
        agents: list[AgentConfig],
        prompt: str,
        round_number: int,
        run: RunState,
        roster: Roster,
    ) -> None:
        for agent in agents:
            if run.stopped:
                break
            await run.wait_while_paused(self.pause_poll_interval)
            await self.stream_agent_turn(agent, prompt, round_number, run, roster)

    # -- one agent turn --------------------------------------------------

    async def stream_agent_turn(
        self,
        agent: AgentConfig,
        prompt: str,
        round_number: int,
        run: RunState,
        roster: Optional[Roster] = None,
    ) -> Optional[ConversationTurn]:
        if run.stopped:
            return None

        await self.sink(
            StreamEvent(
                type="thinking",
                model_id=agent.short_id,
                model_name=agent.name,
                color=agent.color,
            )
        )

        messages = self.orchestrator.build_messages(agent, prompt, roster)
        coalescer = DeltaCoalescer()
        started = time.monotonic()
        stream_done = asyncio.Event()
        flusher = asyncio.create_task(
            self._flush_periodically(agent, coalescer, run, started, stream_done)
        )
        try:
            result = await self._dispatch(agent, messages, coalescer, run)
        finally:
            stream_done.set()
            await flusher

        if not run.stopped and not result.cancelled:
            # Delivery stays suspended until the caller resumes
            await run.wait_while_paused(self.pause_poll_interval)

        if run.stopped or result.cancelled:
            return await self._finish_stopped(agent, coalescer, round_number)

        if not result.success:
            return await self._finish_failed(agent, coalescer, result, round_number, started)

        await self._flush(agent, coalescer, started)
        turn = self._commit_agent_turn(agent, coalescer.text, coalescer.tokens, round_number)
        await self._emit_complete(agent, turn)
        return turn

    async def _dispatch(
        self,
        agent: AgentConfig,
        messages: list[ChatMessage],
        coalescer: DeltaCoalescer,
        run: RunState,
    ) -> StreamResult:
        """Dispatch through the registry, aborting the call as soon as the run stops."""
        stream = asyncio.create_task(
            self.registry.dispatch(agent.model_id, messages, coalescer.add, run.cancel_token)
        )
        stop_wait = asyncio.create_task(run.cancel_token.wait())
        try:
            await asyncio.wait({stream, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            stream.cancel()
            raise
        finally:
            stop_wait.cancel()

        if not stream.done():
            stream.cancel()
            await asyncio.gather(stream, return_exceptions=True)
            return StreamResult(
                success=False,
                error="context canceled",
                kind=ErrorKind.CANCELLED,
                tokens=coalescer.tokens,
            )
        return stream.result()

    async def _flush_periodically(
        self,
        agent: AgentConfig,
        coalescer: DeltaCoalescer,
        run: RunState,
        started: float,
        stream_done: asyncio.Event,
    ) -> None:
        while True:
            try:
                await asyncio.wait_for(stream_done.wait(), timeout=self.flush_interval)
                return
            except asyncio.TimeoutError:
                pass
            if run.stopped:
                return
            if run.paused:
                continue
            await self._flush(agent, coalescer, started)

    async def _flush(self, agent: AgentConfig, coalescer: DeltaCoalescer, started: float) -> None:
        batch = coalescer.drain()
        if not batch:
            return
        await self.sink(
            StreamEvent(
                type="chunk",
                model_id=agent.short_id,
                model_name=agent.name,
                content=batch,
                tokens=coalescer.tokens,
                tokens_per_second=tokens_per_second(
                    coalescer.tokens, time.monotonic() - started
                ),
                color=agent.color,
            )
        )

    async def _finish_stopped(
        self, agent: AgentConfig, coalescer: DeltaCoalescer, round_number: int
    ) -> Optional[ConversationTurn]:
        if not coalescer.text:
            logger.debug("%s stopped before producing output", agent.short_id)
            return None
        turn = self._commit_agent_turn(
            agent, coalescer.text + STOPPED_MARKER, coalescer.tokens, round_number
        )
        await self._emit_complete(agent, turn)
        return turn

    async def _finish_failed(
        self,
        agent: AgentConfig,
        coalescer: DeltaCoalescer,
        result: StreamResult,
        round_number: int,
        started: float,
    ) -> Optional[ConversationTurn]:
        logger.error(
            "API error for %s: %s", agent.model_id, sanitize_error(result.error or "")
        )
        turn = None
        if coalescer.text:
            await self._flush(agent, coalescer, started)
            turn = self._commit_agent_turn(
                agent, coalescer.text, coalescer.tokens, round_number
            )
        await self.sink(
            StreamEvent(
                type="error",
                model_id=agent.short_id,
                model_name=agent.name,
                error=describe_error(result, agent.model_id),
            )
        )
        return turn

    async def _emit_complete(self, agent: AgentConfig, turn: ConversationTurn) -> None:
        await self.sink(
            StreamEvent(
                type="complete",
                model_id=agent.short_id,
                model_name=agent.name,
                content=turn.content,
                tokens=turn.tokens_used,
                color=agent.color,
            )
        )

    # -- history ---------------------------------------------------------

    def _commit_agent_turn(
        self, agent: AgentConfig, content: str, tokens: int, round_number: int
    ) -> ConversationTurn:
        turn = ConversationTurn(
            speaker=agent.short_id,
            model_name=agent.name,
            content=content,
            round_number=round_number,
            tokens_used=tokens,
        )
        self._commit(turn)
        return turn

    def _commit(self, turn: ConversationTurn) -> None:
        self.orchestrator.add_turn(turn)
        if self.store is not None:
            self.store.append_message(self.orchestrator.session_id, turn)
