"""Per-session control loop.

Commands from the client are handled one at a time; each user message runs
as its own task so pause, resume and stop stay responsive while agents are
generating.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from ..models.agent import Roster
from ..models.events import ClientMessage, StreamEvent
from ..providers.registry import ProviderRegistry
from .config import orchestration_timings
from .controller import SessionStreamController
from .orchestrator import ConversationOrchestrator
from .store import SessionStore

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """Message-oriented duplex connection to one client."""

    async def receive(self) -> Optional[dict]: ...

    async def send(self, message: dict) -> None: ...


class ConversationSession:
    def __init__(
        self,
        session_id: str,
        store: SessionStore,
        registry: ProviderRegistry,
        config: Optional[dict] = None,
    ):
        self.session_id = session_id
        self.store = store
        self.registry = registry
        self.flush_interval, self.pause_poll_interval = orchestration_timings(config or {})
        self.orchestrator = ConversationOrchestrator(session_id)
        self._channel: Optional[Channel] = None
        self._send_lock = asyncio.Lock()
        self._run_task: Optional[asyncio.Task] = None

    async def emit(self, event: StreamEvent) -> None:
        if self._channel is None:
            return
        async with self._send_lock:
            await self._channel.send(event.to_wire())

    def _load(self) -> None:
        roster = self.store.load_roster(self.session_id)
        self.orchestrator.update_policy(roster)
        self.orchestrator.load_history(self.store.load_history(self.session_id))

    async def serve(self, channel: Channel) -> None:
        """Run the control loop until the channel closes."""
        self._channel = channel
        self._load()
        logger.info(
            "Session %s ready with %d agents",
            self.session_id,
            len(self.orchestrator.roster.agents),
        )
        await self.emit(StreamEvent(type="ready"))

        try:
            while True:
                raw = await channel.receive()
                if raw is None:
                    break
                try:
                    message = ClientMessage.model_validate(raw)
                except ValidationError as e:
                    logger.warning("Session %s: invalid client message: %s", self.session_id, e)
                    await self.emit(StreamEvent(type="error", error="Invalid message"))
                    continue
                await self.handle(message)
        finally:
            await self.close()

    async def handle(self, message: ClientMessage) -> None:
        if message.type == "user_message":
            await self._start_run(message.content, message.mentioned_models)
        elif message.type == "pause":
            self.orchestrator.pause()
            await self.emit(StreamEvent(type="paused"))
        elif message.type == "resume":
            self.orchestrator.resume()
            await self.emit(StreamEvent(type="resumed"))
        elif message.type == "stop":
            self.orchestrator.stop()
            await self.emit(StreamEvent(type="stopped"))
        elif message.type == "update_config":
            self._update_config(message)

    def _update_config(self, message: ClientMessage) -> None:
        if message.model_configs is None and message.autonomy_rounds is None:
            roster = self.store.load_roster(self.session_id)
        else:
            current = self.orchestrator.roster
            roster = Roster(
                agents=(
                    message.model_configs
                    if message.model_configs is not None
                    else current.agents
                ),
                autonomy_rounds=(
                    message.autonomy_rounds
                    if message.autonomy_rounds is not None
                    else current.autonomy_rounds
                ),
            ).repaired()
            self.store.save_roster(self.session_id, roster.agents, roster.autonomy_rounds)
        self.orchestrator.update_policy(roster)

    async def _start_run(self, content: str, mentions: list[str]) -> None:
        if self._run_task is not None and not self._run_task.done():
            self.orchestrator.stop()
            await self.wait_idle()

        controller = SessionStreamController(
            self.orchestrator,
            self.registry,
            self.emit,
            store=self.store,
            flush_interval=self.flush_interval,
            pause_poll_interval=self.pause_poll_interval,
        )
        self._run_task = asyncio.create_task(controller.run(content, mentions))
        self._run_task.add_done_callback(self._log_run_failure)

    def _log_run_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Session %s run failed: %s", self.session_id, error, exc_info=error)

    async def wait_idle(self) -> None:
        """Wait for the current run, if any, to finish."""
        if self._run_task is not None:
            await asyncio.gather(self._run_task, return_exceptions=True)

    async def close(self) -> None:
        self.orchestrator.stop()
        await self.wait_idle()
        self._channel = None
