"""Event types for streamed responses and the chat pipeline lifecycle.

Adapters yield ``Chunk`` objects. ``ChatPipeline`` notifies listeners with the
lifecycle events below, in the order they happen.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .pipeline import PipelineState


@dataclass
class TokenUsage:
    """Token usage information."""

    prompt_tokens: int
    completion_tokens: int
    cached_tokens: int = 0


@dataclass
class Chunk:
    """One unit of a streamed response.

    ``content`` is new text to append; ``finish_reason`` marks the end of the
    response. Either may be absent, and the terminal chunk may carry usage.
    """

    content: str | None = None
    finish_reason: str | None = None
    usage: TokenUsage | None = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    @classmethod
    def coerce(cls, value: Any) -> Chunk:
        """Accept a Chunk, a bare string, or a mapping with camel- or snake-case keys."""
        if isinstance(value, Chunk):
            return value
        if isinstance(value, str):
            return cls(content=value)
        if isinstance(value, Mapping):
            usage = value.get("usage")
            if isinstance(usage, Mapping):
                usage = TokenUsage(
                    prompt_tokens=usage.get("prompt_tokens", usage.get("promptTokens", 0)),
                    completion_tokens=usage.get(
                        "completion_tokens", usage.get("completionTokens", 0)
                    ),
                    cached_tokens=usage.get("cached_tokens", usage.get("cachedTokens", 0)),
                )
            return cls(
                content=value.get("content"),
                finish_reason=value.get("finish_reason", value.get("finishReason")),
                usage=usage,
            )
        raise TypeError(f"Unsupported chunk type: {type(value).__name__}")


@dataclass
class StateChanged:
    """A conversation moved to a new pipeline state."""

    conversation_id: str
    state: PipelineState
    message_id: str | None = None


@dataclass
class ProcessingStarted:
    """The pipeline began producing a response to a prompt."""

    conversation_id: str
    message_id: str
    prompt: str
    regenerate: bool = False


@dataclass
class ProcessingCompleted:
    """The response finished normally."""

    conversation_id: str
    message_id: str
    content: str


@dataclass
class ProcessingFailed:
    """No response could be produced, or the stream broke."""

    conversation_id: str
    message_id: str | None
    error: str


@dataclass
class ProcessingCancelled:
    """The response was stopped before it finished."""

    conversation_id: str
    message_id: str


# Union type for all lifecycle events
PipelineEvent = (
    StateChanged
    | ProcessingStarted
    | ProcessingCompleted
    | ProcessingFailed
    | ProcessingCancelled
)
