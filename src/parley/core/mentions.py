"""Mention parsing and keyword task classification for turn selection."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from ..models.agent import AgentRole

ALL_MENTION = "all"

_BRACKET_RE = re.compile(r"@\[([^\]]+)\]")
# No word character or dot before the @, so "me@example.com" is not a mention
_BARE_RE = re.compile(r"(?<![\w.])@(\w(?:[\w.-]*\w)?)(?![\w@-])")
_BRACKET_STRIP_RE = re.compile(_BRACKET_RE.pattern + r"\s*")
_BARE_STRIP_RE = re.compile(_BARE_RE.pattern + r"\s*")

PLANNING_KEYWORDS = [
    "plan", "planning", "brainstorm", "ideas", "think about",
    "design", "architect", "strategy", "approach", "outline",
    "what should", "how should", "let's discuss", "think through",
    "consider", "propose", "suggest", "recommendation",
]

CODING_KEYWORDS = [
    "code", "coding", "implement", "write", "build", "create",
    "function", "class", "method", "api", "endpoint", "database",
    "fix bug", "debug", "refactor", "program", "script", "develop",
    "html", "css", "javascript", "python", "go", "swift", "react",
]

REVIEW_KEYWORDS = [
    "review", "check", "analyze", "evaluate", "assess",
    "feedback", "improve", "optimize", "critique", "look at",
    "what's wrong", "find issues", "bugs in",
]


def dedupe_mentions(mentions: Iterable[str]) -> list[str]:
    """Case-insensitive de-duplication keeping first-seen order and case."""
    seen: set[str] = set()
    unique: list[str] = []
    for mention in mentions:
        key = mention.lower()
        if mention and key not in seen:
            seen.add(key)
            unique.append(mention)
    return unique


def extract_mentions(text: str) -> list[str]:
    """Collect @all, @[name] and @name mentions from message text."""
    bare = [m.group(1) for m in _BARE_RE.finditer(text)]

    mentioned: list[str] = []
    if any(name.lower() == ALL_MENTION for name in bare):
        mentioned.append(ALL_MENTION)
    mentioned.extend(m.group(1).strip() for m in _BRACKET_RE.finditer(text))
    mentioned.extend(name for name in bare if name.lower() != ALL_MENTION)
    return dedupe_mentions(mentioned)


def merge_mentions(explicit: Optional[Iterable[str]], text: str) -> list[str]:
    """Explicitly supplied mentions first, then those found in the text."""
    return dedupe_mentions([*(explicit or []), *extract_mentions(text)])


def strip_mentions(text: str) -> str:
    """Remove all mention syntax from text.

    Text without a mention comes back untouched; otherwise the result is
    trimmed. Removal repeats until nothing matches, so the function is
    idempotent.
    """
    if "@" not in text:
        return text

    stripped = text
    while True:
        reduced = _BARE_STRIP_RE.sub("", _BRACKET_STRIP_RE.sub("", stripped))
        if reduced == stripped:
            break
        stripped = reduced

    if stripped == text:
        return text
    return stripped.strip()


def _score(text: str, keywords: list[str]) -> int:
    return sum(1 for kw in keywords if kw in text)


def classify_task(text: str) -> AgentRole:
    """Pick the role whose keyword list scores strictly highest.

    Ties, and messages without any keyword, classify as general.
    """
    lowered = text.lower()
    planning = _score(lowered, PLANNING_KEYWORDS)
    coding = _score(lowered, CODING_KEYWORDS)
    review = _score(lowered, REVIEW_KEYWORDS)

    if planning > coding and planning > review:
        return AgentRole.PLANNER
    if coding > planning and coding > review:
        return AgentRole.CODER
    if review > planning and review > coding:
        return AgentRole.REVIEWER
    return AgentRole.GENERAL
