"""Folds streamed chunks into stored messages.

Every write goes through ``ConversationStore.update_message_by_id`` and is
gated on the session still being live, so a chunk that arrives after
cancellation or finalization changes nothing.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .adapter import Adapter
from .events import Chunk, TokenUsage
from .models import Message, MessageMetadata, MessageStatus
from .store import ConversationStore
from .streaming import StreamingManager, StreamSession

log = logging.getLogger(__name__)

# Raw response text and latency, kept off the root logger
llm_log = logging.getLogger("workspace_chat.llm")


def count_tokens(text: str) -> int:
    """Approximate token count: whitespace-delimited words."""
    return len(text.split())


class MessageReconciler:
    """Applies one session's chunks to its message."""

    def __init__(
        self,
        store: ConversationStore,
        streaming: StreamingManager,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.streaming = streaming
        self._clock = clock

    def apply_chunk(
        self,
        conversation_id: str,
        message_id: str,
        session: StreamSession,
        chunk: Chunk,
        adapter: Adapter | None = None,
    ) -> bool:
        """Apply a chunk to the message.

        Content is appended; a ``finish_reason`` finalizes the message and
        closes the session.

        Returns:
            False if the chunk was dropped because the session is no longer live
        """
        if not session.live:
            log.debug(f"Dropped chunk for message {message_id}: session not live")
            return False

        if chunk.content:
            if session.first_chunk is None:
                session.first_chunk = self._clock()
                llm_log.debug(
                    f"First token for {message_id} after {session.first_chunk_latency:.3f}s"
                )
            current = self.store.get_message(conversation_id, message_id)
            self.store.update_message_by_id(
                conversation_id,
                message_id,
                content=current.content + chunk.content,
                is_streaming=True,
                status=MessageStatus.STREAMING,
            )

        if chunk.finish_reason is not None:
            self.finalize(conversation_id, message_id, session, usage=chunk.usage, adapter=adapter)

        return True

    def finalize(
        self,
        conversation_id: str,
        message_id: str,
        session: StreamSession,
        *,
        usage: TokenUsage | None = None,
        adapter: Adapter | None = None,
    ) -> Message | None:
        """Complete the message with computed metadata and close the session."""
        if not session.live:
            return None

        current = self.store.get_message(conversation_id, message_id)
        elapsed_ms = int(round((self._clock() - session.started) * 1000))
        cost = adapter.estimate_cost(usage) if adapter is not None and usage is not None else None

        message = self.store.update_message_by_id(
            conversation_id,
            message_id,
            is_streaming=False,
            status=MessageStatus.FINALIZED,
            metadata=MessageMetadata(
                token_count=count_tokens(current.content),
                response_time=max(elapsed_ms, 0),
                cost=cost,
            ),
        )
        self.streaming.finish_stream(session)
        llm_log.debug(f"=== LLM Response ({message_id}) ===\n{message.content}")
        return message

    def freeze(
        self,
        conversation_id: str,
        message_id: str,
        status: MessageStatus = MessageStatus.CANCELLED,
    ) -> Message:
        """Stop a message where it is: content kept, no metadata."""
        return self.store.update_message_by_id(
            conversation_id,
            message_id,
            is_streaming=False,
            status=status,
        )
