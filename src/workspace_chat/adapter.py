"""Provider adapter interface and the registry that resolves adapters by provider id."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass

from . import config
from .events import Chunk, TokenUsage

log = logging.getLogger(__name__)

# One history entry: {"role": ..., "content": ...}
HistoryItem = dict[str, str]

AdapterFactory = Callable[[], "Adapter"]


class AdapterNotFound(LookupError):
    """No adapter is registered for a provider id."""

    def __init__(self, provider_id: str | None) -> None:
        super().__init__(f"No adapter registered for provider {provider_id!r}")
        self.provider_id = provider_id


class AdapterStreamError(RuntimeError):
    """An adapter's chunk sequence failed before finishing."""

    def __init__(self, provider_id: str | None, message: str) -> None:
        super().__init__(message)
        self.provider_id = provider_id


@dataclass(frozen=True)
class ChatOptions:
    """Generation options passed to every ``stream_chat`` call."""

    temperature: float = config.DEFAULT_TEMPERATURE
    max_tokens: int = config.DEFAULT_MAX_TOKENS


class Adapter(ABC):
    """Abstract base class for provider adapters.

    Adapters are stateless: they receive a history and return a stream. They
    do not keep conversation state.
    """

    @property
    @abstractmethod
    def provider(self) -> str:
        """Get the provider name."""

    @property
    def model_id(self) -> str | None:
        """Get the model ID, if the adapter is bound to one."""
        return None

    @abstractmethod
    def stream_chat(
        self,
        history: Sequence[HistoryItem],
        options: ChatOptions,
    ) -> AsyncIterator[Chunk]:
        """Stream a response for the given history.

        The returned sequence is finite and single-use: once consumed or
        abandoned, call ``stream_chat`` again to retry.

        Args:
            history: Messages with 'role' and 'content' keys, oldest first
            options: Generation options

        Yields:
            Chunk objects; the last one normally carries ``finish_reason``
        """

    def estimate_cost(self, usage: TokenUsage) -> float | None:
        """Estimate the cost of a response, if the provider supports it."""
        return None


class AdapterRegistry:
    """Maps provider ids to adapters.

    Adapters are either registered directly or built on first use from a
    registered factory.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, Adapter] = {}
        self._factories: dict[str, AdapterFactory] = {}

    def register(self, provider_id: str, adapter: Adapter) -> None:
        self._adapters[provider_id] = adapter
        log.debug(f"Registered adapter for {provider_id}")

    def register_factory(self, provider_id: str, factory: AdapterFactory) -> None:
        """Register a factory used to build the adapter the first time it is needed."""
        self._factories[provider_id] = factory

    def unregister(self, provider_id: str) -> None:
        self._adapters.pop(provider_id, None)
        self._factories.pop(provider_id, None)

    def get(self, provider_id: str | None) -> Adapter:
        """Resolve the adapter for a provider.

        Raises:
            AdapterNotFound: Nothing is registered for ``provider_id``, or its
                factory failed
        """
        if provider_id is None:
            raise AdapterNotFound(provider_id)

        adapter = self._adapters.get(provider_id)
        if adapter is not None:
            return adapter

        factory = self._factories.get(provider_id)
        if factory is None:
            raise AdapterNotFound(provider_id)

        try:
            adapter = factory()
        except Exception as e:
            log.exception(f"Failed to create adapter for {provider_id}: {e}")
            raise AdapterNotFound(provider_id) from e
        self._adapters[provider_id] = adapter
        log.info(f"Created default adapter for {provider_id}")
        return adapter

    def providers(self) -> list[str]:
        return sorted(set(self._adapters) | set(self._factories))

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._adapters or provider_id in self._factories
