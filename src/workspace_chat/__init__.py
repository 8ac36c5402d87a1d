"""Streaming AI chat for code workspaces.

    import asyncio
    from workspace_chat import ChatPipeline

    async def main():
        async with ChatPipeline.from_environment() as chat:
            chat.workspace.add_active_file("app.py")
            reply = await chat.send("Explain app.py")
            print(reply.content)

    asyncio.run(main())

Answers stream into the conversation as they arrive, can be cancelled or
regenerated, and are saved between runs.
"""

from .adapter import Adapter, AdapterNotFound, AdapterRegistry, AdapterStreamError, ChatOptions
from .context import ProjectRef, WorkspaceContext, build_context_prompt
from .events import (
    Chunk,
    ProcessingCancelled,
    ProcessingCompleted,
    ProcessingFailed,
    ProcessingStarted,
    StateChanged,
    TokenUsage,
)
from .export import export_conversation, export_json, export_markdown
from .llm_adapter_litellm import LiteLLMAdapter, create_default_registry
from .models import Conversation, Message, MessageContext, MessageMetadata, MessageStatus
from .persistence import MemoryPersistence, PersistenceError, SQLitePersistence
from .pipeline import ChatPipeline, PipelineState
from .store import ConversationNotFound, ConversationStore, MessageNotFound
from .streaming import StreamAlreadyActive, StreamingManager, StreamSession

__version__ = "0.1.0"
__all__ = [
    "ChatPipeline",
    "PipelineState",
    "Adapter",
    "AdapterNotFound",
    "AdapterRegistry",
    "AdapterStreamError",
    "ChatOptions",
    "LiteLLMAdapter",
    "create_default_registry",
    "Chunk",
    "TokenUsage",
    "StateChanged",
    "ProcessingStarted",
    "ProcessingCompleted",
    "ProcessingFailed",
    "ProcessingCancelled",
    "Conversation",
    "Message",
    "MessageContext",
    "MessageMetadata",
    "MessageStatus",
    "ConversationStore",
    "ConversationNotFound",
    "MessageNotFound",
    "StreamingManager",
    "StreamSession",
    "StreamAlreadyActive",
    "MemoryPersistence",
    "SQLitePersistence",
    "PersistenceError",
    "ProjectRef",
    "WorkspaceContext",
    "build_context_prompt",
    "export_conversation",
    "export_json",
    "export_markdown",
]
