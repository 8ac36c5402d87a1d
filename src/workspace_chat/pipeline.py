"""Chat pipeline: send, regenerate and cancel streamed responses.

    async with ChatPipeline.from_environment() as pipeline:
        pipeline.workspace.add_active_file("src/app.py")
        reply = await pipeline.send("What does app.py do?")
        print(reply.content)

Each response runs in its own task. Responses in different conversations
stream independently; within one conversation only one response is in flight.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os

# Setup logging to file (controlled by WORKSPACE_CHAT_LOGGING_LEVEL env var)
_log_level = os.environ.get("WORKSPACE_CHAT_LOGGING_LEVEL", "").upper()
if _log_level:
    logging.basicConfig(
        filename="workspace_chat.log",
        level=getattr(logging, _log_level, logging.DEBUG),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
log = logging.getLogger(__name__)

# Separate logger for raw LLM content (controlled by WORKSPACE_CHAT_LOG_LLM env var)
llm_log = logging.getLogger("workspace_chat.llm")
llm_log.setLevel(logging.DEBUG)
llm_log.propagate = False  # Don't propagate to root logger
if os.environ.get("WORKSPACE_CHAT_LOG_LLM"):
    _llm_handler = logging.FileHandler("llm_content.log", mode="w")
    _llm_handler.setLevel(logging.DEBUG)
    _llm_handler.setFormatter(logging.Formatter("%(asctime)s\n%(message)s\n"))
    llm_log.addHandler(_llm_handler)

from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from . import config
from .adapter import Adapter, AdapterNotFound, AdapterRegistry, AdapterStreamError, ChatOptions, HistoryItem
from .context import WorkspaceContext, build_context_prompt, compose_prompt
from .events import (
    Chunk,
    PipelineEvent,
    ProcessingCancelled,
    ProcessingCompleted,
    ProcessingFailed,
    ProcessingStarted,
    StateChanged,
)
from .export import export_conversation, export_markdown
from .models import JSON, Conversation, Message, MessageStatus
from .persistence import Persistence
from .reconciler import MessageReconciler
from .store import ConversationStore
from .streaming import StreamingManager, StreamSession

Listener = Callable[[PipelineEvent], None]


class PipelineState(str, Enum):
    """Where a conversation is in the send flow."""

    IDLE = "idle"
    AWAITING_CONTEXT = "awaiting_context"
    USER_MESSAGE_APPENDED = "user_message_appended"
    STREAM_OPEN = "stream_open"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class ChatPipeline:
    """Coordinates context, storage, adapters and streaming for one user.

    Wire it up explicitly:

        pipeline = ChatPipeline(
            registry,
            persistence=SQLitePersistence(),
            default_provider="anthropic",
        )

    or let ``from_environment`` detect providers from API keys.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        persistence: Persistence | None = None,
        *,
        store: ConversationStore | None = None,
        workspace: WorkspaceContext | None = None,
        default_provider: str | None = None,
        default_model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        idle_timeout: float | None = config.STREAM_IDLE_TIMEOUT,
        context_enabled: bool = True,
    ) -> None:
        """Create a chat pipeline.

        Args:
            registry: Adapters by provider id
            persistence: Backend for conversations (ignored when ``store`` is given)
            store: Existing conversation store to use
            workspace: Live workspace context; a fresh one by default
            default_provider: Provider for conversations that don't name one
            default_model: Model for conversations that don't name one
            temperature: Sampling temperature for every request
            max_tokens: Response length limit for every request
            idle_timeout: Seconds to wait for the next chunk; None or 0 waits forever
            context_enabled: Prepend workspace context to prompts
        """
        self.registry = registry
        self.store = store if store is not None else ConversationStore(persistence)
        self.workspace = workspace if workspace is not None else WorkspaceContext()
        self.streaming = StreamingManager()
        self.reconciler = MessageReconciler(self.store, self.streaming)
        self.default_provider = default_provider or config.DEFAULT_PROVIDER
        self.default_model = default_model or config.DEFAULT_MODEL
        self.options = ChatOptions(
            temperature=config.DEFAULT_TEMPERATURE if temperature is None else temperature,
            max_tokens=config.DEFAULT_MAX_TOKENS if max_tokens is None else max_tokens,
        )
        self.idle_timeout = idle_timeout if idle_timeout and idle_timeout > 0 else None
        self.context_enabled = context_enabled

        self._states: dict[str, PipelineState] = {}
        self._loading: set[str] = set()
        self._tasks: dict[str, asyncio.Task[Message | None]] = {}
        self._listeners: list[Listener] = []
        self._closed = False

    @classmethod
    def from_environment(cls, persistence: Persistence | None = None, **kwargs: Any) -> ChatPipeline:
        """Build a pipeline over litellm with providers detected from the environment."""
        from .llm_adapter_litellm import create_default_registry, detect_provider

        provider = kwargs.pop("default_provider", None) or config.DEFAULT_PROVIDER
        model = kwargs.pop("default_model", None) or config.DEFAULT_MODEL
        if provider is None:
            provider, detected_model = detect_provider()
            model = model or detected_model
        models = {provider: model} if provider and model else None
        return cls(
            create_default_registry(models=models),
            persistence,
            default_provider=provider,
            default_model=model,
            **kwargs,
        )

    # ========== Lifecycle ==========

    async def __aenter__(self) -> ChatPipeline:
        self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def open(self) -> None:
        self._closed = False
        self.streaming.open()

    async def aclose(self) -> None:
        """Cancel every live response, wait for the tasks to settle, and save."""
        self._closed = True
        self.streaming.close()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.store.save()

    @property
    def closed(self) -> bool:
        return self._closed

    # ========== Listeners and state ==========

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: PipelineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.exception(f"Pipeline listener failed on {type(event).__name__}: {e}")

    def _set_state(
        self, conversation_id: str, state: PipelineState, message_id: str | None = None
    ) -> None:
        self._states[conversation_id] = state
        log.debug(f"Conversation {conversation_id} -> {state.value}")
        self._emit(StateChanged(conversation_id, state, message_id))

    def state(self, conversation_id: str) -> PipelineState:
        return self._states.get(conversation_id, PipelineState.IDLE)

    @property
    def is_loading(self) -> bool:
        return bool(self._loading)

    def is_conversation_loading(self, conversation_id: str) -> bool:
        return conversation_id in self._loading

    # ========== Conversations ==========

    @property
    def conversation(self) -> Conversation | None:
        """The active conversation."""
        return self.store.active

    def new_conversation(
        self,
        title: str | None = None,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> Conversation:
        """Start a conversation in the current project and make it active."""
        return self.store.create_conversation(
            title,
            context=self.workspace.conversation_context(),
            provider=provider,
            model=model,
        )

    def switch_conversation(self, conversation_id: str) -> Conversation:
        return self.store.set_active(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Stop any response in the conversation, then delete it."""
        await self._stop_conversation(conversation_id)
        self.store.delete_conversation(conversation_id)

    def export(self, conversation_id: str | None = None) -> dict[str, JSON]:
        """Export a conversation (the active one by default) for download."""
        return export_conversation(self._resolve_conversation(conversation_id))

    def export_markdown(self, conversation_id: str | None = None) -> str:
        return export_markdown(self._resolve_conversation(conversation_id))

    def _resolve_conversation(self, conversation_id: str | None) -> Conversation:
        if conversation_id is not None:
            return self.store.get(conversation_id)
        conversation = self.store.active
        if conversation is None:
            conversation = self.new_conversation()
        return conversation

    def set_context_enabled(self, enabled: bool) -> None:
        self.context_enabled = enabled

    # ========== Commands ==========

    async def send(self, text: str, conversation_id: str | None = None) -> Message | None:
        """Send a user message and stream the assistant's reply.

        Args:
            text: What the user typed
            conversation_id: Target conversation; the active one by default

        Returns:
            The final assistant message (finalized, cancelled, or an error
            message), or None if nothing was sent
        """
        self._ensure_open()
        text = text.strip()
        if not text:
            return None

        conversation = self._resolve_conversation(conversation_id)
        if conversation.id in self._loading:
            log.warning(f"Ignoring send to {conversation.id}: a response is already in progress")
            return None

        self._set_state(conversation.id, PipelineState.AWAITING_CONTEXT)
        context_prompt = self.workspace.build_prompt(self.context_enabled)
        user_message = Message(
            role="user",
            content=text,
            context=self.workspace.snapshot() if context_prompt else None,
        )
        self.store.append(conversation.id, user_message)
        self._set_state(conversation.id, PipelineState.USER_MESSAGE_APPENDED, user_message.id)

        return await self._respond(
            conversation,
            user_message,
            compose_prompt(context_prompt, text),
            regenerate=False,
        )

    async def regenerate(
        self, message_id: str, conversation_id: str | None = None
    ) -> Message | None:
        """Replace an assistant message with a fresh response to the same prompt.

        The message must directly follow a user message; otherwise nothing
        happens. The user message is reused, not sent again.

        Returns:
            The new assistant message, or None if nothing was regenerated
        """
        self._ensure_open()
        conversation = (
            self.store.get(conversation_id)
            if conversation_id is not None
            else self.store.conversation_of(message_id)
        )
        if conversation is None:
            log.info(f"Regenerate ignored: message {message_id} not found")
            return None

        index = conversation.index_of(message_id)
        if index < 0:
            log.info(f"Regenerate ignored: message {message_id} not in {conversation.id}")
            return None
        target = conversation.messages[index]
        if target.role != "assistant" or index == 0:
            log.info(f"Regenerate ignored: {message_id} has no originating prompt")
            return None
        prompt_message = conversation.messages[index - 1]
        if prompt_message.role != "user":
            log.info(f"Regenerate ignored: {message_id} does not follow a user message")
            return None

        if self.streaming.get_session(message_id) is not None:
            await self._stop_message(message_id)
        if conversation.id in self._loading:
            log.warning(f"Regenerate ignored: a response is already in progress in {conversation.id}")
            return None

        index = conversation.index_of(message_id)
        if index < 0:
            log.info(f"Regenerate ignored: message {message_id} was removed")
            return None
        replaced = [conversation.messages[index]]
        if replaced[0].status is MessageStatus.ERRORED and index + 1 < len(conversation.messages):
            # A failed partial is followed by its own error notice
            notice = conversation.messages[index + 1]
            if (
                notice.role == "assistant"
                and notice.status is MessageStatus.ERRORED
                and notice.content == config.ERROR_STREAM_FAILED
            ):
                replaced.append(notice)
        for message in replaced:
            self.store.remove_message(conversation.id, message.id)
        log.info(f"Regenerating response to {prompt_message.id} (replacing {message_id})")

        context = prompt_message.context
        context_prompt = ""
        if context is not None:
            context_prompt = build_context_prompt(
                True,
                project={"name": context.project_name},
                files=context.files,
                selection=context.selection,
                terminal=context.terminal,
            )
        return await self._respond(
            conversation,
            prompt_message,
            compose_prompt(context_prompt, prompt_message.content),
            regenerate=True,
        )

    def cancel(self, message_id: str) -> bool:
        """Stop one response; its content so far is kept."""
        return self.streaming.cancel_stream(message_id)

    def cancel_all(self) -> int:
        """Stop every response in flight.

        Returns:
            Number of responses stopped
        """
        return self.streaming.cancel_all_streams()

    # ========== Response flow ==========

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("ChatPipeline is closed")

    async def _respond(
        self,
        conversation: Conversation,
        prompt_message: Message,
        prompt: str,
        *,
        regenerate: bool,
    ) -> Message | None:
        conversation_id = conversation.id
        provider = conversation.provider or self.default_provider
        # Cleared by the consumer task once it exists
        self._loading.add(conversation_id)
        task: asyncio.Task[Message | None] | None = None
        try:
            try:
                adapter = self.registry.get(provider)
            except AdapterNotFound as e:
                log.warning(f"Cannot answer in {conversation_id}: {e}")
                error_message = Message(
                    role="assistant",
                    content=config.ERROR_NO_PROVIDER,
                    status=MessageStatus.ERRORED,
                    provider=provider,
                )
                self.store.insert_after(conversation_id, error_message, prompt_message.id)
                self._set_state(conversation_id, PipelineState.ERRORED, error_message.id)
                self._emit(ProcessingFailed(conversation_id, error_message.id, str(e)))
                self._set_state(conversation_id, PipelineState.IDLE)
                return error_message

            history = self._history(conversation, prompt_message, prompt)
            placeholder = Message.placeholder(
                model=conversation.model or adapter.model_id or self.default_model,
                provider=provider,
            )
            self.store.insert_after(conversation_id, placeholder, prompt_message.id)
            session = self.streaming.start_stream(placeholder.id, conversation_id)
            self._set_state(conversation_id, PipelineState.STREAM_OPEN, placeholder.id)
            self._emit(
                ProcessingStarted(conversation_id, placeholder.id, prompt_message.content, regenerate)
            )

            task = asyncio.create_task(
                self._consume(conversation_id, placeholder.id, session, adapter, history)
            )
            task.add_done_callback(
                functools.partial(self._on_task_done, conversation_id, placeholder.id, session)
            )
            session.attach(task)
            self._tasks[placeholder.id] = task
        finally:
            if task is None:
                self._loading.discard(conversation_id)

        try:
            return await task
        except asyncio.CancelledError:
            # Consumer cancelled before it started; our own cancellation propagates
            if not (task.cancelled() and session.cancelled):
                raise
            try:
                return self.store.get_message(conversation_id, placeholder.id)
            except KeyError:
                return None
        finally:
            self._tasks.pop(placeholder.id, None)

    def _on_task_done(
        self,
        conversation_id: str,
        message_id: str,
        session: StreamSession,
        task: asyncio.Task,
    ) -> None:
        """Clean up after a consumer task that was cancelled before its first step."""
        if not task.cancelled():
            return
        self.streaming.finish_stream(session)
        self._loading.discard(conversation_id)
        try:
            message = self.store.get_message(conversation_id, message_id)
        except KeyError:
            self._set_state(conversation_id, PipelineState.IDLE)
            return
        if not message.status.is_terminal:
            self._on_cancelled(conversation_id, message_id)

    def _history(
        self, conversation: Conversation, prompt_message: Message, prompt: str
    ) -> list[HistoryItem]:
        """Messages sent to the provider: everything up to the prompt, minus failures."""
        history: list[HistoryItem] = []
        for message in conversation.messages:
            if message.id == prompt_message.id:
                history.append({"role": message.role, "content": prompt})
                break
            if message.status is MessageStatus.ERRORED or message.is_streaming:
                continue
            if message.content:
                history.append({"role": message.role, "content": message.content})
        return history

    async def _next_chunk(self, iterator: AsyncIterator[Any], provider: str | None) -> Chunk:
        try:
            if self.idle_timeout is None:
                value = await iterator.__anext__()
            else:
                value = await asyncio.wait_for(iterator.__anext__(), self.idle_timeout)
        except StopAsyncIteration:
            raise
        except asyncio.TimeoutError as e:
            raise AdapterStreamError(
                provider, f"No chunk received for {self.idle_timeout}s"
            ) from e
        except Exception as e:
            raise AdapterStreamError(provider, f"{type(e).__name__}: {e}") from e
        return Chunk.coerce(value)

    async def _consume(
        self,
        conversation_id: str,
        message_id: str,
        session: StreamSession,
        adapter: Adapter,
        history: list[HistoryItem],
    ) -> Message | None:
        """Feed the adapter's chunks to the reconciler until the stream ends."""
        stream: AsyncIterator[Any] | None = None
        try:
            try:
                stream = adapter.stream_chat(history, self.options)
                iterator = stream.__aiter__()
            except Exception as e:
                raise AdapterStreamError(adapter.provider, f"{type(e).__name__}: {e}") from e

            finished = False
            while True:
                try:
                    chunk = await self._next_chunk(iterator, adapter.provider)
                except StopAsyncIteration:
                    break
                if not session.live:
                    break
                if chunk.content and self.state(conversation_id) is not PipelineState.STREAMING:
                    self._set_state(conversation_id, PipelineState.STREAMING, message_id)
                self.reconciler.apply_chunk(conversation_id, message_id, session, chunk, adapter)
                if chunk.is_terminal:
                    finished = True
                    break

            if session.cancelled:
                return self._on_cancelled(conversation_id, message_id)

            if not finished:
                log.info(f"Stream for {message_id} ended without a finish reason; finalizing")
                self.reconciler.finalize(conversation_id, message_id, session, adapter=adapter)

            message = self.store.get_message(conversation_id, message_id)
            self._set_state(conversation_id, PipelineState.FINALIZED, message_id)
            self._emit(ProcessingCompleted(conversation_id, message_id, message.content))
            self._set_state(conversation_id, PipelineState.IDLE)
            return message

        except asyncio.CancelledError:
            # Stopped by the user: keep the partial response
            return self._on_cancelled(conversation_id, message_id)
        except Exception as e:
            return self._on_failed(conversation_id, message_id, e)
        finally:
            self.streaming.finish_stream(session)
            self._loading.discard(conversation_id)
            await _aclose(stream)

    def _on_cancelled(self, conversation_id: str, message_id: str) -> Message | None:
        try:
            message = self.store.get_message(conversation_id, message_id)
            if not message.status.is_terminal:
                message = self.reconciler.freeze(conversation_id, message_id)
        except KeyError:
            log.info(f"Cancelled message {message_id} no longer exists")
            self._set_state(conversation_id, PipelineState.IDLE)
            return None

        log.info(f"Response {message_id} cancelled after {len(message.content)} chars")
        self._set_state(conversation_id, PipelineState.CANCELLED, message_id)
        self._emit(ProcessingCancelled(conversation_id, message_id))
        self._set_state(conversation_id, PipelineState.IDLE)
        return message

    def _on_failed(self, conversation_id: str, message_id: str, error: Exception) -> Message | None:
        log.exception(f"Error while streaming {message_id}: {error}")
        try:
            partial = self.store.get_message(conversation_id, message_id)
            if partial.content:
                # Keep what arrived and report the failure separately
                self.reconciler.freeze(conversation_id, message_id, MessageStatus.ERRORED)
                error_message = Message(
                    role="assistant",
                    content=config.ERROR_STREAM_FAILED,
                    status=MessageStatus.ERRORED,
                    model=partial.model,
                    provider=partial.provider,
                )
                self.store.insert_after(conversation_id, error_message, message_id)
            else:
                error_message = self.store.update_message_by_id(
                    conversation_id,
                    message_id,
                    content=config.ERROR_STREAM_FAILED,
                    is_streaming=False,
                    status=MessageStatus.ERRORED,
                )
        except KeyError:
            log.info(f"Failed message {message_id} no longer exists")
            self._set_state(conversation_id, PipelineState.IDLE)
            return None

        self._set_state(conversation_id, PipelineState.ERRORED, error_message.id)
        self._emit(ProcessingFailed(conversation_id, error_message.id, str(error)))
        self._set_state(conversation_id, PipelineState.IDLE)
        return error_message

    async def _stop_message(self, message_id: str) -> None:
        self.streaming.cancel_stream(message_id)
        task = self._tasks.get(message_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _stop_conversation(self, conversation_id: str) -> None:
        for message_id in self.streaming.active_message_ids():
            session = self.streaming.get_session(message_id)
            if session is not None and session.conversation_id == conversation_id:
                await self._stop_message(message_id)


async def _aclose(stream: object) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        log.debug(f"Error closing adapter stream: {e}")
