"""Session persistence collaborators.

The orchestration core only reads history and rosters and appends turns;
anything richer belongs to the embedding application.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Protocol

import yaml

from ..models.agent import AgentConfig, Roster
from ..models.conversation import ConversationTurn

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class SessionStore(Protocol):
    def append_message(self, session_id: str, turn: ConversationTurn) -> None: ...

    def load_history(self, session_id: str) -> list[ConversationTurn]: ...

    def load_roster(self, session_id: str) -> Roster: ...

    def save_roster(
        self, session_id: str, agents: list[AgentConfig], autonomy_rounds: int
    ) -> None: ...


class MemoryStore:
    """In-process store, used by tests and embedders with their own persistence."""

    def __init__(self) -> None:
        self.messages: dict[str, list[ConversationTurn]] = {}
        self.rosters: dict[str, Roster] = {}

    def append_message(self, session_id: str, turn: ConversationTurn) -> None:
        self.messages.setdefault(session_id, []).append(turn)

    def load_history(self, session_id: str) -> list[ConversationTurn]:
        return sorted(self.messages.get(session_id, []), key=lambda t: t.created_at)

    def load_roster(self, session_id: str) -> Roster:
        roster = self.rosters.get(session_id) or Roster()
        return roster.model_copy(deep=True)

    def save_roster(
        self, session_id: str, agents: list[AgentConfig], autonomy_rounds: int
    ) -> None:
        self.rosters[session_id] = Roster(agents=agents, autonomy_rounds=autonomy_rounds)


class FileStore:
    """Directory-per-session store: roster.yaml plus append-only messages.jsonl."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def _session_dir(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id) or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.root / session_id

    def append_message(self, session_id: str, turn: ConversationTurn) -> None:
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        with (session_dir / "messages.jsonl").open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(turn.model_dump(mode="json"), ensure_ascii=False) + "\n")

    def load_history(self, session_id: str) -> list[ConversationTurn]:
        path = self._session_dir(session_id) / "messages.jsonl"
        if not path.exists():
            return []
        turns = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                turns.append(ConversationTurn.model_validate_json(line))
        return sorted(turns, key=lambda t: t.created_at)

    def load_roster(self, session_id: str) -> Roster:
        path = self._session_dir(session_id) / "roster.yaml"
        if not path.exists():
            return Roster()
        data = yaml.safe_load(path.read_text(encoding="utf-8-sig")) or {}
        return Roster.model_validate(data)

    def save_roster(
        self, session_id: str, agents: list[AgentConfig], autonomy_rounds: int
    ) -> None:
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        roster = Roster(agents=agents, autonomy_rounds=autonomy_rounds)
        content = yaml.dump(
            roster.model_dump(mode="json"),
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            width=120,
        )
        (session_dir / "roster.yaml").write_text(content, encoding="utf-8")

    def list_sessions(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

