"""In-memory short-term conversation history.

Keeps the last N exchanges per conversation so the agent has short-term
context. Nothing is persisted; history resets on restart.
"""

import time
from collections.abc import Hashable
from dataclasses import dataclass, field

DEFAULT_MAX_HISTORY = 20


@dataclass
class HistoryEntry:
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Per-conversation rolling history."""

    def __init__(self, max_messages: int = DEFAULT_MAX_HISTORY, user_label: str = "User"):
        self.max_messages = max(1, max_messages)
        self.user_label = user_label
        self._conversations: dict[Hashable, list[HistoryEntry]] = {}

    def add(self, conversation_id: Hashable, role: str, content: str) -> None:
        history = self._conversations.setdefault(conversation_id, [])
        history.append(HistoryEntry(role=role, content=content))
        if len(history) > self.max_messages:
            del history[: len(history) - self.max_messages]

    def get(self, conversation_id: Hashable) -> list[HistoryEntry]:
        return list(self._conversations.get(conversation_id, []))

    def clear(self, conversation_id: Hashable) -> None:
        self._conversations.pop(conversation_id, None)

    def format_for_prompt(self, conversation_id: Hashable) -> str:
        """Render recent history as a block to prepend to the next user message."""
        history = self._conversations.get(conversation_id)
        if not history:
            return ""
        formatted = "\n\n".join(
            f"{self.user_label if entry.role == 'user' else 'Assistant'}: {entry.content}"
            for entry in history
        )
        return (
            f"# Recent Conversation\n\n{formatted}\n\n---\n\n"
            f"{self.user_label}'s latest message follows:"
        )
