"""In-memory conversation store with optional persistence.

All message changes are by id: the store builds a new ``messages`` tuple and
swaps it in, never editing a position in place. Two responses streaming into
different messages therefore cannot clobber each other.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any

from . import config
from .models import Conversation, ConversationContext, Message, MessageStatus, new_id, utcnow
from .persistence import Persistence

log = logging.getLogger(__name__)


class ConversationNotFound(KeyError):
    """No conversation with the given id."""


class MessageNotFound(KeyError):
    """No message with the given id in the conversation."""


class DuplicateMessageId(ValueError):
    """A message id is already used in the store."""


class ConversationStore:
    """Owns every conversation and its messages.

    When a persistence backend is given, the collection is loaded on
    construction and saved whenever it changes outside of streaming. Any
    persistence failure is logged and the store carries on in memory only.
    """

    def __init__(self, persistence: Persistence | None = None) -> None:
        self._persistence = persistence
        self._conversations: dict[str, Conversation] = {}
        # message id -> conversation id
        self._message_index: dict[str, str] = {}
        self._active_id: str | None = None
        self.memory_only = persistence is None
        self.load()

    # ========== Persistence ==========

    def load(self) -> None:
        """Load conversations from persistence, replacing what is in memory."""
        if self.memory_only or self._persistence is None:
            return

        try:
            raw = self._persistence.load(config.CONVERSATIONS_KEY)
            active_id = self._persistence.load(config.ACTIVE_CONVERSATION_KEY)
            records: list[dict[str, Any]] = json.loads(raw) if raw else []
            conversations = [Conversation.from_dict(r) for r in records]
        except Exception as e:
            log.exception(f"Failed to load conversations, continuing in memory only: {e}")
            self.memory_only = True
            return

        self._conversations = {}
        self._message_index = {}
        for conversation in conversations:
            conversation.messages = tuple(_settle(m) for m in conversation.messages)
            self._conversations[conversation.id] = conversation
            for message in conversation.messages:
                self._message_index[message.id] = conversation.id

        self._active_id = active_id if active_id in self._conversations else None
        log.info(f"Loaded {len(conversations)} conversation(s)")

    def save(self) -> None:
        """Write the whole collection to persistence."""
        if self.memory_only or self._persistence is None:
            return

        try:
            payload = json.dumps([c.to_dict() for c in self._conversations.values()])
            self._persistence.save(config.CONVERSATIONS_KEY, payload)
            self._persistence.save(config.ACTIVE_CONVERSATION_KEY, self._active_id or "")
        except Exception as e:
            log.exception(f"Failed to save conversations, continuing in memory only: {e}")
            self.memory_only = True

    # ========== Conversations ==========

    def create_conversation(
        self,
        title: str | None = None,
        *,
        context: ConversationContext | None = None,
        provider: str | None = None,
        model: str | None = None,
        activate: bool = True,
    ) -> Conversation:
        """Create a new conversation.

        Args:
            title: Optional title; defaults to the creation time
            context: Project the conversation belongs to
            provider: Provider id used to answer in this conversation
            model: Model used to answer in this conversation
            activate: Make it the active conversation

        Returns:
            The created Conversation
        """
        now = utcnow()
        if title is None:
            title = f"Chat {now.strftime('%Y-%m-%d %H:%M')}"

        conversation = Conversation(
            id=new_id(),
            title=title,
            created_at=now,
            updated_at=now,
            context=context or ConversationContext(),
            provider=provider,
            model=model,
        )
        self._conversations[conversation.id] = conversation
        if activate:
            self._active_id = conversation.id
        self.save()
        return conversation

    def get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def list_conversations(self) -> list[Conversation]:
        """List conversations ordered by most recently updated."""
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    @property
    def active(self) -> Conversation | None:
        if self._active_id is None:
            return None
        return self._conversations.get(self._active_id)

    def set_active(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        self._active_id = conversation.id
        self.save()
        return conversation

    def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        context: ConversationContext | None = None,
    ) -> Conversation:
        """Update conversation settings; arguments left as None are unchanged."""
        conversation = self.get(conversation_id)
        if title is not None:
            conversation.title = title
        if provider is not None:
            conversation.provider = provider
        if model is not None:
            conversation.model = model
        if context is not None:
            conversation.context = context
        self._touch(conversation)
        self.save()
        return conversation

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        return self.update_conversation(conversation_id, title=title)

    def delete_conversation(self, conversation_id: str) -> None:
        conversation = self._conversations.pop(conversation_id, None)
        if conversation is None:
            return
        for message in conversation.messages:
            self._message_index.pop(message.id, None)
        if self._active_id == conversation_id:
            self._active_id = None
        self.save()

    def search(self, query: str) -> list[Conversation]:
        """Find conversations whose title or messages contain ``query`` (case-insensitive)."""
        needle = query.lower()
        return [
            c
            for c in self.list_conversations()
            if needle in c.title.lower() or any(needle in m.content.lower() for m in c.messages)
        ]

    # ========== Messages ==========

    def append(self, conversation_id: str, message: Message) -> Message:
        """Append a message to the end of a conversation.

        Raises:
            DuplicateMessageId: The message id is already in the store
        """
        return self._insert(conversation_id, message, index=None)

    def insert_after(self, conversation_id: str, message: Message, after_id: str) -> Message:
        """Insert a message directly after another one."""
        conversation = self.get(conversation_id)
        index = conversation.index_of(after_id)
        if index < 0:
            raise MessageNotFound(after_id)
        return self._insert(conversation_id, message, index=index + 1)

    def _insert(self, conversation_id: str, message: Message, index: int | None) -> Message:
        conversation = self.get(conversation_id)
        if message.id in self._message_index:
            raise DuplicateMessageId(message.id)

        messages = list(conversation.messages)
        if index is None:
            messages.append(message)
        else:
            messages.insert(index, message)
        conversation.messages = tuple(messages)
        self._message_index[message.id] = conversation_id
        self._touch(conversation)
        self.save()
        return message

    def conversation_of(self, message_id: str) -> Conversation | None:
        """Conversation holding a message, if any."""
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return None
        return self._conversations.get(conversation_id)

    def get_message(self, conversation_id: str, message_id: str) -> Message:
        message = self.get(conversation_id).find(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message

    def update_message_by_id(self, conversation_id: str, message_id: str, **changes: Any) -> Message:
        """Replace a message with a copy carrying ``changes``.

        Persists when the updated message is no longer streaming.

        Returns:
            The new Message
        """
        conversation = self.get(conversation_id)
        current = conversation.find(message_id)
        if current is None:
            raise MessageNotFound(message_id)

        updated = replace(current, **changes)
        conversation.messages = tuple(
            updated if m.id == message_id else m for m in conversation.messages
        )
        self._touch(conversation)
        if not updated.is_streaming:
            self.save()
        return updated

    def remove_message(self, conversation_id: str, message_id: str) -> Message:
        conversation = self.get(conversation_id)
        removed = conversation.find(message_id)
        if removed is None:
            raise MessageNotFound(message_id)

        conversation.messages = tuple(m for m in conversation.messages if m.id != message_id)
        self._message_index.pop(message_id, None)
        self._touch(conversation)
        self.save()
        return removed

    def _touch(self, conversation: Conversation) -> None:
        now = utcnow()
        if now > conversation.updated_at:
            conversation.updated_at = now


def _settle(message: Message) -> Message:
    """Mark a message restored mid-stream as stopped; no session survives a restart."""
    if not message.is_streaming and message.status.is_terminal:
        return message
    return replace(message, is_streaming=False, status=MessageStatus.CANCELLED)
