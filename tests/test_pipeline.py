"""Tests for the chat pipeline send flow, failures and cancellation."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FailingAdapter, QueueAdapter, ScriptedAdapter
from workspace_chat import (
    AdapterRegistry,
    ChatPipeline,
    Chunk,
    MessageStatus,
    PipelineState,
    ProcessingCancelled,
    ProcessingCompleted,
    ProcessingFailed,
    ProcessingStarted,
    ProjectRef,
    StateChanged,
    TokenUsage,
)
from workspace_chat.config import ERROR_NO_PROVIDER, ERROR_STREAM_FAILED


def _pipeline(adapter, **kwargs) -> ChatPipeline:
    registry = AdapterRegistry()
    registry.register(adapter.provider, adapter)
    kwargs.setdefault("idle_timeout", None)
    return ChatPipeline(registry, default_provider=adapter.provider, **kwargs)


class TestSend:
    """Tests for a normal send."""

    @pytest.mark.asyncio
    async def test_streamed_reply_is_finalized(self, pipeline: ChatPipeline) -> None:
        reply = await pipeline.send("hello")

        assert reply is not None
        assert reply.content == "Foo is bar"
        assert reply.is_streaming is False
        assert reply.status is MessageStatus.FINALIZED
        assert reply.metadata.token_count == 3
        assert reply.metadata.response_time >= 0
        assert reply.provider == "scripted"
        assert reply.model == "scripted-model"

        messages = pipeline.conversation.messages
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content == "hello"
        assert pipeline.is_loading is False
        assert pipeline.streaming.active_stream_count == 0

    @pytest.mark.asyncio
    async def test_creates_conversation_when_none_active(self, pipeline: ChatPipeline) -> None:
        assert pipeline.conversation is None
        await pipeline.send("hi")
        assert pipeline.conversation is not None
        assert len(pipeline.store) == 1

    @pytest.mark.asyncio
    async def test_blank_text_is_ignored(self, pipeline: ChatPipeline) -> None:
        assert await pipeline.send("   ") is None
        assert pipeline.conversation is None

    @pytest.mark.asyncio
    async def test_history_includes_prior_turns(
        self, pipeline: ChatPipeline, scripted: ScriptedAdapter
    ) -> None:
        await pipeline.send("first")
        await pipeline.send("second")

        assert scripted.calls[1] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "Foo is bar"},
            {"role": "user", "content": "second"},
        ]

    @pytest.mark.asyncio
    async def test_workspace_context_is_prepended(
        self, pipeline: ChatPipeline, scripted: ScriptedAdapter
    ) -> None:
        pipeline.workspace.project = ProjectRef(name="demo")
        pipeline.workspace.add_active_file("a.py")

        await pipeline.send("explain")

        sent = scripted.calls[0][-1]["content"]
        assert sent == "Workspace Context:\nProject: demo\nActive Files: a.py\n\nUser Request: explain"
        user_message = pipeline.conversation.messages[0]
        assert user_message.content == "explain"
        assert user_message.context.files == ("a.py",)

    @pytest.mark.asyncio
    async def test_context_disabled(self, pipeline: ChatPipeline, scripted: ScriptedAdapter) -> None:
        pipeline.workspace.add_active_file("a.py")
        pipeline.set_context_enabled(False)

        await pipeline.send("explain")

        assert scripted.calls[0] == [{"role": "user", "content": "explain"}]
        assert pipeline.conversation.messages[0].context is None

    @pytest.mark.asyncio
    async def test_stream_without_finish_reason_is_finalized(self) -> None:
        pipeline = _pipeline(ScriptedAdapter([Chunk("done")]))
        reply = await pipeline.send("go")
        assert reply.content == "done"
        assert reply.status is MessageStatus.FINALIZED
        assert reply.is_streaming is False

    @pytest.mark.asyncio
    async def test_plain_string_and_dict_chunks(self) -> None:
        pipeline = _pipeline(ScriptedAdapter(["Hi ", {"content": "there", "finishReason": "stop"}]))
        reply = await pipeline.send("go")
        assert reply.content == "Hi there"
        assert reply.status is MessageStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_dict_chunk_usage_prices_the_reply(self) -> None:
        """Usage given as a mapping is read as token counts and priced by the adapter."""

        class PricedAdapter(ScriptedAdapter):
            def estimate_cost(self, usage: TokenUsage) -> float | None:
                return usage.prompt_tokens * 0.01 + usage.completion_tokens * 0.02

        usage = {"prompt_tokens": 10, "completion_tokens": 5}
        pipeline = _pipeline(
            PricedAdapter([{"content": "ok", "finish_reason": "stop", "usage": usage}])
        )
        reply = await pipeline.send("go")
        assert reply.metadata.cost == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_conversation_provider_overrides_default(self, pipeline: ChatPipeline) -> None:
        other = ScriptedAdapter([Chunk("from other", finish_reason="stop")], provider="other")
        pipeline.registry.register("other", other)
        pipeline.new_conversation(provider="other")

        reply = await pipeline.send("hi")
        assert reply.content == "from other"
        assert reply.provider == "other"


class TestFailures:
    """Tests for missing providers and broken streams."""

    @pytest.mark.asyncio
    async def test_no_provider(self, pipeline: ChatPipeline, scripted: ScriptedAdapter) -> None:
        pipeline.default_provider = "missing"

        reply = await pipeline.send("hello")

        assert reply.content == ERROR_NO_PROVIDER
        assert reply.status is MessageStatus.ERRORED
        assert reply.is_streaming is False
        assert scripted.calls == []
        assert pipeline.streaming.active_stream_count == 0
        assert pipeline.is_loading is False
        assert [m.role for m in pipeline.conversation.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_error_after_partial_content(self) -> None:
        """Partial content is kept and the error gets its own message."""
        pipeline = _pipeline(FailingAdapter([Chunk("partial ")]))

        reply = await pipeline.send("hello")

        user, partial, error = pipeline.conversation.messages
        assert partial.content == "partial "
        assert partial.is_streaming is False
        assert partial.status is MessageStatus.ERRORED
        assert error.content == ERROR_STREAM_FAILED
        assert error.is_streaming is False
        assert reply is not None and reply.id == error.id
        assert pipeline.is_loading is False
        assert pipeline.streaming.active_stream_count == 0

    @pytest.mark.asyncio
    async def test_error_before_content(self) -> None:
        pipeline = _pipeline(FailingAdapter([]))

        reply = await pipeline.send("hello")

        messages = pipeline.conversation.messages
        assert len(messages) == 2
        assert messages[1].id == reply.id
        assert reply.content == ERROR_STREAM_FAILED
        assert reply.status is MessageStatus.ERRORED

    @pytest.mark.asyncio
    async def test_errored_messages_are_left_out_of_history(self) -> None:
        failing = FailingAdapter([Chunk("partial ")])
        pipeline = _pipeline(failing)
        await pipeline.send("first")
        await pipeline.send("second")

        assert failing.calls[1] == [
            {"role": "user", "content": "first"},
            {"role": "user", "content": "second"},
        ]

    @pytest.mark.asyncio
    async def test_idle_timeout(self, queued: QueueAdapter) -> None:
        pipeline = _pipeline(queued, idle_timeout=0.05)

        reply = await pipeline.send("hello")

        assert reply.content == ERROR_STREAM_FAILED
        assert reply.status is MessageStatus.ERRORED
        assert pipeline.is_loading is False


class TestCancellation:
    """Tests for stopping responses."""

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_content(self, queued: QueueAdapter, wait_until) -> None:
        pipeline = _pipeline(queued)
        task = asyncio.create_task(pipeline.send("hello"))

        await queued.queue.put(Chunk("Hello "))
        await wait_until(
            lambda: pipeline.conversation is not None
            and pipeline.conversation.messages[-1].content == "Hello "
        )
        message_id = pipeline.streaming.active_message_ids()[0]
        assert pipeline.cancel(message_id) is True
        await queued.queue.put(Chunk("world"))
        await queued.queue.put(Chunk(finish_reason="stop"))

        reply = await task

        assert reply.id == message_id
        assert reply.content == "Hello "
        assert reply.status is MessageStatus.CANCELLED
        assert reply.is_streaming is False
        assert pipeline.is_loading is False
        assert pipeline.cancel(message_id) is False

    @pytest.mark.asyncio
    async def test_cancel_all(self, wait_until) -> None:
        first = QueueAdapter(provider="first")
        second = QueueAdapter(provider="second")
        registry = AdapterRegistry()
        registry.register("first", first)
        registry.register("second", second)
        pipeline = ChatPipeline(registry, idle_timeout=None)

        a = pipeline.new_conversation(provider="first")
        b = pipeline.new_conversation(provider="second")
        tasks = [
            asyncio.create_task(pipeline.send("one", a.id)),
            asyncio.create_task(pipeline.send("two", b.id)),
        ]
        await wait_until(lambda: pipeline.streaming.active_stream_count == 2)
        assert pipeline.is_conversation_loading(a.id)
        assert pipeline.is_conversation_loading(b.id)

        assert pipeline.cancel_all() == 2
        assert pipeline.streaming.active_stream_count == 0

        replies = await asyncio.gather(*tasks)
        assert all(r.status is MessageStatus.CANCELLED for r in replies)
        assert pipeline.is_loading is False

    @pytest.mark.asyncio
    async def test_cancel_before_first_chunk_is_requested(self, pipeline: ChatPipeline) -> None:
        """Cancelling right after send starts still settles the placeholder."""
        events = []
        pipeline.add_listener(events.append)
        task = asyncio.create_task(pipeline.send("hello"))
        await asyncio.sleep(0)

        assert pipeline.cancel_all() == 1
        reply = await task

        assert reply.status is MessageStatus.CANCELLED
        assert reply.is_streaming is False
        assert reply.content == ""
        assert pipeline.is_loading is False
        assert pipeline.streaming.active_stream_count == 0
        assert pipeline.state(pipeline.conversation.id) is PipelineState.IDLE
        assert sum(isinstance(e, ProcessingCancelled) for e in events) == 1

        second = await pipeline.send("again")
        assert second.status is MessageStatus.FINALIZED
        assert second.content == "Foo is bar"

    @pytest.mark.asyncio
    async def test_aclose_before_first_chunk_is_requested(self, pipeline: ChatPipeline) -> None:
        task = asyncio.create_task(pipeline.send("hello"))
        await asyncio.sleep(0)

        await pipeline.aclose()

        reply = await task
        assert reply.status is MessageStatus.CANCELLED
        assert pipeline.is_loading is False

    @pytest.mark.asyncio
    async def test_concurrent_send_to_busy_conversation(self, queued: QueueAdapter, wait_until) -> None:
        pipeline = _pipeline(queued)
        task = asyncio.create_task(pipeline.send("first"))
        await wait_until(lambda: pipeline.streaming.active_stream_count == 1)

        assert await pipeline.send("second") is None

        await queued.queue.put(Chunk("ok", finish_reason="stop"))
        reply = await task
        assert reply.content == "ok"
        assert [m.content for m in pipeline.conversation.messages] == ["first", "ok"]

    @pytest.mark.asyncio
    async def test_conversations_stream_independently(self, wait_until) -> None:
        slow = QueueAdapter(provider="slow")
        fast = ScriptedAdapter([Chunk("quick", finish_reason="stop")], provider="fast")
        registry = AdapterRegistry()
        registry.register("slow", slow)
        registry.register("fast", fast)
        pipeline = ChatPipeline(registry, idle_timeout=None)

        a = pipeline.new_conversation(provider="slow")
        b = pipeline.new_conversation(provider="fast")
        slow_task = asyncio.create_task(pipeline.send("wait", a.id))
        await wait_until(lambda: pipeline.is_conversation_loading(a.id))

        quick = await pipeline.send("now", b.id)
        assert quick.content == "quick"
        assert pipeline.is_conversation_loading(a.id)

        await slow.queue.put(Chunk("slow", finish_reason="stop"))
        assert (await slow_task).content == "slow"

    @pytest.mark.asyncio
    async def test_aclose_cancels_and_refuses(self, queued: QueueAdapter, wait_until) -> None:
        pipeline = _pipeline(queued)
        task = asyncio.create_task(pipeline.send("hello"))
        await wait_until(lambda: pipeline.streaming.active_stream_count == 1)

        await pipeline.aclose()

        assert (await task).status is MessageStatus.CANCELLED
        with pytest.raises(RuntimeError):
            await pipeline.send("again")

    @pytest.mark.asyncio
    async def test_delete_conversation_stops_stream(self, queued: QueueAdapter, wait_until) -> None:
        pipeline = _pipeline(queued)
        task = asyncio.create_task(pipeline.send("hello"))
        await wait_until(lambda: pipeline.streaming.active_stream_count == 1)
        conversation_id = pipeline.conversation.id

        await pipeline.delete_conversation(conversation_id)

        await task
        assert conversation_id not in pipeline.store
        assert pipeline.streaming.active_stream_count == 0


class TestListeners:
    """Tests for lifecycle notifications."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, pipeline: ChatPipeline) -> None:
        events = []
        pipeline.add_listener(events.append)

        await pipeline.send("hello")

        states = [e.state for e in events if isinstance(e, StateChanged)]
        assert states == [
            PipelineState.AWAITING_CONTEXT,
            PipelineState.USER_MESSAGE_APPENDED,
            PipelineState.STREAM_OPEN,
            PipelineState.STREAMING,
            PipelineState.FINALIZED,
            PipelineState.IDLE,
        ]
        lifecycle = [type(e) for e in events if not isinstance(e, StateChanged)]
        assert lifecycle == [ProcessingStarted, ProcessingCompleted]
        completed = next(e for e in events if isinstance(e, ProcessingCompleted))
        assert completed.content == "Foo is bar"

    @pytest.mark.asyncio
    async def test_failure_and_cancel_events(self, queued: QueueAdapter, wait_until) -> None:
        pipeline = _pipeline(queued)
        events = []
        pipeline.add_listener(events.append)

        task = asyncio.create_task(pipeline.send("hello"))
        await wait_until(lambda: pipeline.streaming.active_stream_count == 1)
        pipeline.cancel_all()
        await task
        assert any(isinstance(e, ProcessingCancelled) for e in events)

        pipeline.default_provider = "missing"
        await pipeline.send("again")
        failed = [e for e in events if isinstance(e, ProcessingFailed)]
        assert len(failed) == 1
        assert pipeline.state(pipeline.conversation.id) is PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_break_send(self, pipeline: ChatPipeline) -> None:
        def broken(event) -> None:
            raise ValueError("listener bug")

        pipeline.add_listener(broken)
        reply = await pipeline.send("hello")
        assert reply.status is MessageStatus.FINALIZED

        pipeline.remove_listener(broken)
        assert pipeline._listeners == []
