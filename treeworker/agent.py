"""Context building and token estimation."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

from treeworker.entries import (
    Entry,
    GoalSetEntry,
    Message,
    MessageEntry,
    MessageRole,
    SessionEndEntry,
    TextBlock,
)


def build_context(entries: Iterable[Entry], leaf_id: str) -> list[Message]:
    """Collect the messages on the path from the root to ``leaf_id``.

    Walking upward, messages are kept, a session end stops the walk (adding its
    continuation brief as a system message when present), and the goal found is
    put first as a system message. Other entries are skipped.
    """
    by_id = {entry.id: entry for entry in entries}
    collected: list[Message] = []
    goal: str | None = None
    seen: set[str] = set()
    current: str | None = leaf_id

    while current is not None and current not in seen:
        entry = by_id.get(current)
        if entry is None:
            break
        seen.add(current)
        if isinstance(entry, MessageEntry):
            collected.append(entry.message)
        elif isinstance(entry, SessionEndEntry):
            brief = entry.continuation_brief
            if brief is not None and brief.strip():
                collected.append(
                    Message(
                        role=MessageRole.SYSTEM,
                        content=f"## Previous Session Continuation\n{brief}",
                    )
                )
            break
        elif isinstance(entry, GoalSetEntry):
            goal = entry.goal
        current = entry.parent_id

    collected.reverse()
    if goal is not None:
        collected.insert(0, Message(role=MessageRole.SYSTEM, content=f"## Current Goal\n{goal}"))
    return collected


def estimate_tokens(content: str) -> int:
    """Estimate tokens for a string at roughly 3.5 bytes per token."""
    return (len(content.encode("utf-8")) * 2 + 7) // 7


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def estimate_context_tokens(messages: Sequence[Message]) -> int:
    """Estimate the total tokens across all messages."""
    total = 0
    for msg in messages:
        if isinstance(msg.content, str):
            total += estimate_tokens(msg.content)
        else:
            for block in msg.content:
                if isinstance(block, TextBlock):
                    total += estimate_tokens(block.text)
                else:
                    total += estimate_tokens(_json_text(block.arguments))
        for call in msg.tool_calls or ():
            total += estimate_tokens(_json_text(call.arguments))
    return total