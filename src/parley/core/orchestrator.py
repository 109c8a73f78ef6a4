"""Conversation orchestrator.

Owns one session's roster, turn history and run state. Decides which
agents answer an utterance and builds the message context each of them
sees.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from ..models.agent import AgentConfig, AgentRole, Roster
from ..models.conversation import ChatMessage, ConversationTurn
from .mentions import ALL_MENTION, classify_task, merge_mentions, strip_mentions

logger = logging.getLogger(__name__)

BEHAVIOR_RULES = [
    "Only discuss what the user actually said. Do not invent or assume topics.",
    "Do not pretend to have had previous conversations that didn't happen.",
    "Do not claim capabilities you don't have (like browsing the web, "
    "generating images, or executing code).",
    "You are a text-based assistant. You can only provide text responses.",
    "If you don't know something, say so.",
]

COLLABORATION_RULES = [
    "You CAN see and reference what other assistants have said.",
    "You CAN build upon, improve, or respectfully critique their work.",
    "IMPORTANT: Only respond if you have something NEW and valuable to add.",
    "Do NOT repeat what others have said or just echo agreement.",
    "For simple greetings/questions, ONE brief response is enough - "
    "don't keep chatting about being ready to help.",
    "Focus on the actual task. If there's no task yet, wait for one "
    "instead of making small talk.",
    "If another assistant has already answered well, say 'I agree with [name]' "
    "or stay silent rather than repeating.",
]


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class RunState:
    """Control flags for one live orchestration run."""

    paused: bool = False
    finished: bool = False
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stopped(self) -> bool:
        return self.cancel_token.is_set()

    def stop(self) -> None:
        self.cancel_token.set()

    async def wait_while_paused(self, poll_interval: float = 0.1) -> None:
        while self.paused and not self.stopped:
            await asyncio.sleep(poll_interval)


def format_peer_turn(name: str, short_id: str, content: str) -> str:
    return f"[{name} (#{short_id})]: {content}"


class ConversationOrchestrator:
    def __init__(
        self,
        session_id: str,
        roster: Optional[Roster] = None,
        history: Optional[Iterable[ConversationTurn]] = None,
    ):
        self.session_id = session_id
        self.roster = (roster or Roster()).repaired()
        self.history: list[ConversationTurn] = list(history or [])
        self.run: Optional[RunState] = None

    # -- policy and history ----------------------------------------------

    def snapshot(self) -> Roster:
        """Policy copy captured by a run when it starts."""
        return self.roster.model_copy(deep=True)

    def update_policy(self, roster: Roster) -> None:
        """Replace the roster; runs already in flight keep their snapshot."""
        self.roster = roster.repaired()
        logger.debug(
            "Session %s roster updated: %d agents, %d autonomy rounds",
            self.session_id,
            len(self.roster.agents),
            self.roster.autonomy_rounds,
        )

    def load_history(self, turns: Iterable[ConversationTurn]) -> None:
        self.history = list(turns)

    def add_turn(self, turn: ConversationTurn) -> None:
        self.history.append(turn)

    def token_usage(self, roster: Optional[Roster] = None) -> dict[str, int]:
        roster = roster or self.roster
        usage = {agent.name: 0 for agent in roster.agents}
        for turn in self.history:
            if turn.model_name is not None:
                usage[turn.model_name] = usage.get(turn.model_name, 0) + turn.tokens_used
        return usage

    # -- run control -----------------------------------------------------

    @property
    def state(self) -> SessionState:
        run = self.run
        if run is None:
            return SessionState.IDLE
        if run.stopped:
            return SessionState.STOPPED
        if run.paused:
            return SessionState.PAUSED
        if run.finished:
            return SessionState.IDLE
        return SessionState.RUNNING

    def start_run(self) -> RunState:
        """Discard the previous run state and begin a fresh one."""
        self.run = RunState()
        return self.run

    def finish_run(self, run: RunState) -> None:
        run.finished = True

    def pause(self) -> None:
        if self.run is not None and not self.run.stopped:
            self.run.paused = True

    def resume(self) -> None:
        if self.run is not None:
            self.run.paused = False

    def stop(self) -> None:
        if self.run is not None:
            self.run.stop()

    def checkpoint(self, run: RunState) -> None:
        """Hold the run after an unattended round until the caller resumes."""
        if not run.stopped:
            run.paused = True

    # -- turn selection --------------------------------------------------

    def select_agents(
        self,
        utterance: str,
        mentions: Optional[list[str]] = None,
        roster: Optional[Roster] = None,
    ) -> tuple[list[AgentConfig], str]:
        """Decide who answers ``utterance``; returns (agents, shared prompt)."""
        roster = roster or self.roster
        prompt = strip_mentions(utterance)
        agents = roster.agents
        if not agents:
            return [], prompt

        all_mentions = merge_mentions(mentions, utterance)
        if any(m.lower() == ALL_MENTION for m in all_mentions):
            return list(agents), prompt

        if all_mentions:
            wanted = {m.lower() for m in all_mentions}
            responding = [
                a for a in agents
                if a.short_id.lower() in wanted or a.name.lower() in wanted
            ]
            if responding:
                return responding, prompt

        task_role = classify_task(utterance)
        for agent in agents:
            if agent.role == task_role:
                return [agent], prompt
        for agent in agents:
            if agent.role == AgentRole.GENERAL:
                return [agent], prompt
        return [agents[0]], prompt

    # -- message construction --------------------------------------------

    def build_system_prompt(self, agent: AgentConfig, roster: Optional[Roster] = None) -> str:
        roster = roster or self.roster
        parts = [f"Your name is {agent.name}."]
        if agent.system_prompt:
            parts.append(f" {agent.system_prompt}")

        parts.append("\n\nRules:\n")
        parts.extend(f"- {rule}\n" for rule in BEHAVIOR_RULES)

        if len(roster.agents) > 1:
            parts.append("\n## Multi-Agent Collaboration\n")
            parts.append(
                "You are in a multi-agent chat with other AI assistants. "
                "Messages from other assistants appear as [AssistantName (#id)]: content.\n"
            )
            parts.extend(f"- {rule}\n" for rule in COLLABORATION_RULES)

        parts.append("\nUse markdown code blocks with language tags when sharing code.")
        return "".join(parts)

    def build_messages(
        self,
        agent: AgentConfig,
        prompt: str,
        roster: Optional[Roster] = None,
    ) -> list[ChatMessage]:
        messages = [
            ChatMessage(role="system", content=self.build_system_prompt(agent, roster))
        ]

        for turn in self.history:
            if turn.is_user:
                messages.append(ChatMessage(role="user", content=strip_mentions(turn.content)))
            elif turn.speaker == agent.short_id:
                messages.append(ChatMessage(role="assistant", content=turn.content))
            else:
                name = turn.model_name or turn.speaker
                messages.append(
                    ChatMessage(
                        role="user",
                        content=format_peer_turn(name, turn.speaker, turn.content),
                    )
                )

        # The prompt is usually already the newest user turn
        if prompt and prompt != self._last_user_message():
            messages.append(ChatMessage(role="user", content=prompt))

        return messages

    def _last_user_message(self) -> str:
        for turn in reversed(self.history):
            if turn.is_user:
                return strip_mentions(turn.content)
        return ""
