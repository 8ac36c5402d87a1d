"""Stream session tracking and cancellation.

A ``StreamSession`` is the live, cancellable unit of work behind one streaming
message. ``StreamingManager`` guarantees at most one live session per message
id: a second ``start_stream`` for the same id is rejected, or, when asked,
replaces the first in the same step.

Cancellation is cooperative. Cancelling marks the session so its consumer
drops any further chunks, and cancels the consumer task (if one is attached)
so a provider call stuck between chunks is abandoned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from .models import utcnow

log = logging.getLogger(__name__)


class StreamAlreadyActive(RuntimeError):
    """A live session already exists for the message."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} already has a live stream")
        self.message_id = message_id


class StreamingManagerClosed(RuntimeError):
    """The manager was closed and accepts no new sessions."""


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        # No running loop
        return None


@dataclass(eq=False)
class StreamSession:
    """Handle for one in-progress response.

    ``started`` and ``first_chunk`` are ``time.monotonic()`` readings used for
    latency figures; ``started_at`` is the wall-clock start.
    """

    message_id: str
    conversation_id: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    started: float = field(default_factory=time.monotonic)
    first_chunk: float | None = None
    cancelled: bool = False
    closed: bool = False
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def live(self) -> bool:
        return not (self.cancelled or self.closed)

    @property
    def first_chunk_latency(self) -> float | None:
        """Seconds from stream start to first content, if any arrived."""
        if self.first_chunk is None:
            return None
        return self.first_chunk - self.started

    def attach(self, task: asyncio.Task) -> None:
        """Attach the task consuming this session's stream."""
        self._task = task

    def _cancel(self) -> None:
        self.cancelled = True
        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()


class StreamingManager:
    """Owns the set of live stream sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, StreamSession] = {}
        self._closed = False

    def open(self) -> None:
        """Accept new sessions (again, after ``close``)."""
        self._closed = False

    def close(self) -> None:
        """Cancel every live session and refuse new ones."""
        self.cancel_all_streams()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> StreamingManager:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start_stream(
        self,
        message_id: str,
        conversation_id: str | None = None,
        *,
        supersede: bool = False,
    ) -> StreamSession:
        """Open a session for a message.

        Args:
            message_id: Message the session writes to
            conversation_id: Conversation holding the message
            supersede: Cancel an existing live session for the message instead of failing

        Raises:
            StreamAlreadyActive: A live session exists and ``supersede`` is False
            StreamingManagerClosed: The manager has been closed
        """
        if self._closed:
            raise StreamingManagerClosed("Streaming manager is closed")

        existing = self._sessions.get(message_id)
        if existing is not None:
            if not supersede:
                raise StreamAlreadyActive(message_id)
            log.info(f"Superseding live stream for message {message_id}")
            existing._cancel()

        session = StreamSession(message_id=message_id, conversation_id=conversation_id)
        self._sessions[message_id] = session
        log.debug(f"Started stream for message {message_id} ({len(self._sessions)} live)")
        return session

    def cancel_stream(self, message_id: str) -> bool:
        """Cancel the live session for a message.

        Unknown or already finished ids are ignored.

        Returns:
            True if a live session was cancelled
        """
        session = self._sessions.pop(message_id, None)
        if session is None:
            return False
        session._cancel()
        log.info(f"Cancelled stream for message {message_id}")
        return True

    def cancel_all_streams(self) -> int:
        """Cancel every live session.

        Returns:
            Number of sessions cancelled
        """
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session._cancel()
        if sessions:
            log.info(f"Cancelled {len(sessions)} live stream(s)")
        return len(sessions)

    def finish_stream(self, session: StreamSession) -> None:
        """Close a session that ended on its own (finished or failed).

        Only removes the session if it is still the live one for its message,
        so a superseded session cannot evict its replacement.
        """
        session.closed = True
        if self._sessions.get(session.message_id) is session:
            del self._sessions[session.message_id]

    def get_session(self, message_id: str) -> StreamSession | None:
        return self._sessions.get(message_id)

    def is_stream_active(self, message_id: str) -> bool:
        session = self._sessions.get(message_id)
        return session is not None and session.live

    @property
    def active_stream_count(self) -> int:
        return len(self._sessions)

    def active_message_ids(self) -> list[str]:
        return list(self._sessions)
