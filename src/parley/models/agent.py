"""Agent and roster data models."""

from __future__ import annotations

import secrets
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, field_validator

MAX_AUTONOMY_ROUNDS = 999

MODEL_COLORS = [
    "#6366f1",  # indigo
    "#ec4899",  # pink
    "#14b8a6",  # teal
    "#f59e0b",  # amber
    "#8b5cf6",  # violet
    "#10b981",  # emerald
    "#f43f5e",  # rose
    "#06b6d4",  # cyan
]


class AgentRole(str, Enum):
    GENERAL = "general"
    PLANNER = "planner"
    CODER = "coder"
    REVIEWER = "reviewer"


class AgentConfig(BaseModel):
    model_id: str
    name: str
    short_id: str
    system_prompt: str = ""
    role: AgentRole = AgentRole.GENERAL
    color: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _default_role(cls, value):
        return value or AgentRole.GENERAL


def generate_short_id(existing: Iterable[str]) -> str:
    """Return the first free handle of the sequence a1..z1, a2..z2, ..."""
    taken = set(existing)
    for i in range(100):
        candidate = f"{chr(ord('a') + i % 26)}{i // 26 + 1}"
        if candidate not in taken:
            return candidate
    while True:
        candidate = f"x{secrets.token_hex(2)}"
        if candidate not in taken:
            return candidate


class Roster(BaseModel):
    agents: list[AgentConfig] = []
    autonomy_rounds: int = 0

    @field_validator("autonomy_rounds", mode="before")
    @classmethod
    def _clamp_rounds(cls, value):
        rounds = int(value or 0)
        return max(0, min(rounds, MAX_AUTONOMY_ROUNDS))

    def repaired(self) -> Roster:
        """Copy of the roster with pairwise-unique short ids.

        The first agent holding an id keeps it; later duplicates get a fresh
        id that collides with no other entry in the roster.
        """
        all_ids = {a.short_id for a in self.agents}
        seen: set[str] = set()
        fixed: list[AgentConfig] = []
        for agent in self.agents:
            if agent.short_id in seen:
                new_id = generate_short_id(all_ids | seen)
                agent = agent.model_copy(update={"short_id": new_id})
            seen.add(agent.short_id)
            fixed.append(agent)
        return Roster(agents=fixed, autonomy_rounds=self.autonomy_rounds)
