"""Pytest configuration and shared fixtures for workspace-chat tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

import pytest

from workspace_chat import (
    Adapter,
    AdapterRegistry,
    ChatOptions,
    ChatPipeline,
    Chunk,
    ConversationStore,
    MemoryPersistence,
)
from workspace_chat.adapter import HistoryItem


class ScriptedAdapter(Adapter):
    """Yields a fixed list of chunks, recording every history it was given."""

    def __init__(self, chunks: Sequence[object], provider: str = "scripted") -> None:
        self.chunks = list(chunks)
        self.calls: list[list[HistoryItem]] = []
        self._provider = provider

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model_id(self) -> str:
        return f"{self._provider}-model"

    async def stream_chat(
        self, history: Sequence[HistoryItem], options: ChatOptions
    ) -> AsyncIterator[Chunk]:
        self.calls.append(list(history))
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk


class FailingAdapter(ScriptedAdapter):
    """Yields its chunks, then drops the connection."""

    async def stream_chat(
        self, history: Sequence[HistoryItem], options: ChatOptions
    ) -> AsyncIterator[Chunk]:
        self.calls.append(list(history))
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        raise ConnectionError("connection reset by peer")


class QueueAdapter(Adapter):
    """Yields whatever the test puts on its queue; ``None`` ends the stream."""

    def __init__(self, provider: str = "queued") -> None:
        self.queue: asyncio.Queue[object] = asyncio.Queue()
        self.calls: list[list[HistoryItem]] = []
        self._provider = provider

    @property
    def provider(self) -> str:
        return self._provider

    async def stream_chat(
        self, history: Sequence[HistoryItem], options: ChatOptions
    ) -> AsyncIterator[Chunk]:
        self.calls.append(list(history))
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item


STORY = [Chunk("Foo "), Chunk("is "), Chunk("bar"), Chunk(finish_reason="stop")]


@pytest.fixture
def scripted() -> ScriptedAdapter:
    return ScriptedAdapter(STORY)


@pytest.fixture
def queued() -> QueueAdapter:
    return QueueAdapter()


@pytest.fixture
def registry(scripted: ScriptedAdapter, queued: QueueAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register("scripted", scripted)
    registry.register("queued", queued)
    return registry


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def store(persistence: MemoryPersistence) -> ConversationStore:
    return ConversationStore(persistence)


@pytest.fixture
def pipeline(registry: AdapterRegistry, store: ConversationStore) -> ChatPipeline:
    """Pipeline answering with the scripted adapter by default."""
    return ChatPipeline(registry, store=store, default_provider="scripted", idle_timeout=None)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a condition while letting other tasks run."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait_until
