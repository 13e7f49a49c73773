"""
Chat session continuity and conversation history.

SessionStore keeps the conversation correlation token across restarts.
ChatHistory archives finished conversations so they can be searched
later.
"""

import logging
import uuid
from dataclasses import asdict
from typing import Optional

from .kvstore import KeyValueStore
from .types import ChatMessage, Conversation, utc_now

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "session"
TOKEN_KEY = "token"
MESSAGES_KEY = "messages"
HISTORY_NAMESPACE = "history"

MAX_TITLE_LENGTH = 60


class SessionStore:
    """Persisted session token and the messages of the open conversation."""

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    @property
    def token(self) -> Optional[str]:
        return self._kv.get(SESSION_NAMESPACE, TOKEN_KEY)

    def set_token(self, token: str) -> None:
        if token != self.token:
            logger.info("Chat session %s started", token)
        self._kv.set(SESSION_NAMESPACE, TOKEN_KEY, token)

    def clear(self) -> None:
        """Invalidate the token and drop the open conversation."""
        self._kv.delete(SESSION_NAMESPACE, TOKEN_KEY)
        self._kv.delete(SESSION_NAMESPACE, MESSAGES_KEY)

    def messages(self) -> list[ChatMessage]:
        raw = self._kv.get(SESSION_NAMESPACE, MESSAGES_KEY, [])
        return [ChatMessage(**m) for m in raw]

    def add_message(self, message: ChatMessage) -> None:
        raw = self._kv.get(SESSION_NAMESPACE, MESSAGES_KEY, [])
        raw.append(asdict(message))
        self._kv.set(SESSION_NAMESPACE, MESSAGES_KEY, raw)


def _title_for(messages: list[ChatMessage]) -> str:
    first = next((m.content for m in messages if m.is_user), "Conversation")
    first = " ".join(first.split())
    if len(first) > MAX_TITLE_LENGTH:
        return first[:MAX_TITLE_LENGTH - 3] + "..."
    return first


class ChatHistory:
    """Archive of past conversations, newest first."""

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    def archive(self, messages: list[ChatMessage]) -> Optional[Conversation]:
        """Store a finished conversation. Empty conversations are skipped."""
        if not messages:
            return None
        conversation = Conversation(
            id=uuid.uuid4().hex,
            title=_title_for(messages),
            messages=messages,
            timestamp=utc_now(),
        )
        self._kv.set(HISTORY_NAMESPACE, conversation.id, asdict(conversation))
        return conversation

    def all(self) -> list[Conversation]:
        conversations = [
            Conversation(
                id=d["id"],
                title=d["title"],
                messages=[ChatMessage(**m) for m in d["messages"]],
                timestamp=d["timestamp"],
            )
            for d in self._kv.items(HISTORY_NAMESPACE).values()
        ]
        conversations.sort(key=lambda c: c.timestamp, reverse=True)
        return conversations

    def search(self, term: str = "") -> list[Conversation]:
        """Conversations whose title contains `term` (case-insensitive)."""
        needle = term.lower()
        return [c for c in self.all() if needle in c.title.lower()]

    def delete(self, conversation_id: str) -> bool:
        return self._kv.delete(HISTORY_NAMESPACE, conversation_id)

    def clear(self) -> int:
        return self._kv.clear(HISTORY_NAMESPACE)
