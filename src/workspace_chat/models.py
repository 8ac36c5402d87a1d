"""Conversation and message data model.

Messages are frozen: every change goes through ``dataclasses.replace`` and the
owning conversation swaps in a new ``messages`` tuple, so a reference held by a
caller never changes underneath it.

``to_dict``/``from_dict`` use the camelCase field names of the exported
conversation format.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

# JSON type for serialized conversations
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]

Role = Literal["user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return utcnow()


def _format_time(value: datetime) -> str:
    return value.isoformat()


class MessageStatus(str, Enum):
    """Lifecycle state of a message."""

    PENDING = "pending"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.FINALIZED, MessageStatus.CANCELLED, MessageStatus.ERRORED)


@dataclass(frozen=True)
class MessageContext:
    """Workspace context captured when a user message was sent."""

    files: tuple[str, ...] = ()
    terminal: tuple[str, ...] = ()
    selection: str | None = None
    project_name: str | None = None
    project_path: str | None = None

    def to_dict(self) -> dict[str, JSON]:
        data: dict[str, JSON] = {}
        if self.files:
            data["files"] = list(self.files)
        if self.terminal:
            data["terminal"] = list(self.terminal)
        if self.selection is not None:
            data["selection"] = self.selection
        if self.project_name is not None:
            data["projectName"] = self.project_name
        if self.project_path is not None:
            data["projectPath"] = self.project_path
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageContext:
        return cls(
            files=tuple(data.get("files") or ()),
            terminal=tuple(data.get("terminal") or ()),
            selection=data.get("selection"),
            project_name=data.get("projectName"),
            project_path=data.get("projectPath"),
        )


@dataclass(frozen=True)
class MessageMetadata:
    """Figures computed when a response is finalized.

    ``response_time`` is in milliseconds, measured from stream start.
    """

    token_count: int | None = None
    response_time: int | None = None
    cost: float | None = None

    def to_dict(self) -> dict[str, JSON]:
        data: dict[str, JSON] = {}
        if self.token_count is not None:
            data["tokenCount"] = self.token_count
        if self.response_time is not None:
            data["responseTime"] = self.response_time
        if self.cost is not None:
            data["cost"] = self.cost
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageMetadata:
        return cls(
            token_count=data.get("tokenCount"),
            response_time=data.get("responseTime"),
            cost=data.get("cost"),
        )


@dataclass(frozen=True)
class Message:
    """A single chat message."""

    role: Role
    content: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    is_streaming: bool = False
    status: MessageStatus = MessageStatus.FINALIZED
    model: str | None = None
    provider: str | None = None
    context: MessageContext | None = None
    metadata: MessageMetadata | None = None

    @classmethod
    def placeholder(cls, *, model: str | None = None, provider: str | None = None) -> Message:
        """Create an empty assistant message awaiting its first chunk."""
        return cls(
            role="assistant",
            content="",
            is_streaming=True,
            status=MessageStatus.PENDING,
            model=model,
            provider=provider,
        )

    def to_dict(self, *, include_status: bool = True) -> dict[str, JSON]:
        data: dict[str, JSON] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": _format_time(self.timestamp),
            "isStreaming": self.is_streaming,
        }
        if include_status:
            data["status"] = self.status.value
        if self.model is not None:
            data["model"] = self.model
        if self.provider is not None:
            data["provider"] = self.provider
        if self.context is not None:
            data["context"] = self.context.to_dict()
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        context = data.get("context")
        metadata = data.get("metadata")
        status = data.get("status")
        return cls(
            id=str(data["id"]),
            role=data["role"],
            content=data.get("content") or "",
            timestamp=_parse_time(data.get("timestamp")),
            is_streaming=bool(data.get("isStreaming", False)),
            status=MessageStatus(status) if status else MessageStatus.FINALIZED,
            model=data.get("model"),
            provider=data.get("provider"),
            context=MessageContext.from_dict(context) if isinstance(context, dict) else None,
            metadata=MessageMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
        )


@dataclass(frozen=True)
class ConversationContext:
    """Project a conversation belongs to."""

    project_id: str | None = None
    project_name: str | None = None
    active_files: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSON]:
        data: dict[str, JSON] = {}
        if self.project_id is not None:
            data["projectId"] = self.project_id
        if self.project_name is not None:
            data["projectName"] = self.project_name
        if self.active_files:
            data["activeFiles"] = list(self.active_files)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationContext:
        return cls(
            project_id=data.get("projectId"),
            project_name=data.get("projectName"),
            active_files=tuple(data.get("activeFiles") or ()),
        )


@dataclass
class Conversation:
    """A chat conversation with messages.

    Owned by ``ConversationStore``; mutate it only through the store.
    """

    id: str
    title: str
    messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    context: ConversationContext = field(default_factory=ConversationContext)
    provider: str | None = None
    model: str | None = None

    def find(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def to_dict(self) -> dict[str, JSON]:
        data: dict[str, JSON] = {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": _format_time(self.created_at),
            "updatedAt": _format_time(self.updated_at),
            "context": self.context.to_dict(),
        }
        if self.provider is not None:
            data["provider"] = self.provider
        if self.model is not None:
            data["model"] = self.model
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        context = data.get("context")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or ()),
            created_at=_parse_time(data.get("createdAt")),
            updated_at=_parse_time(data.get("updatedAt")),
            context=(
                ConversationContext.from_dict(context)
                if isinstance(context, dict)
                else ConversationContext()
            ),
            provider=data.get("provider"),
            model=data.get("model"),
        )
