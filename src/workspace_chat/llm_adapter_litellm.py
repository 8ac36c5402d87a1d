"""LiteLLM adapter - one ``Adapter`` implementation covering every litellm provider.

Usage:
    registry = create_default_registry()
    adapter = registry.get("anthropic")

    async for chunk in adapter.stream_chat(history, ChatOptions()):
        print(chunk.content or "", end="")
"""

from __future__ import annotations

import functools
import logging
import os
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import litellm
from litellm import acompletion

from .adapter import Adapter, AdapterRegistry, ChatOptions, HistoryItem
from .events import Chunk, TokenUsage

# Suppress litellm's noisy logging
litellm.suppress_debug_info = True
logging.getLogger("litellm").setLevel(logging.CRITICAL)
logging.getLogger("httpx").setLevel(logging.CRITICAL)
logging.getLogger("httpcore").setLevel(logging.CRITICAL)

log = logging.getLogger(__name__)

OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")

# provider -> (API key environment variables, default model)
PROVIDER_DEFAULTS: dict[str, tuple[tuple[str, ...], str]] = {
    "anthropic": (("ANTHROPIC_API_KEY",), "claude-sonnet-4-20250514"),
    "openai": (("OPENAI_API_KEY",), "gpt-4o-mini"),
    "gemini": (("GEMINI_API_KEY", "GOOGLE_API_KEY"), "gemini/gemini-1.5-flash"),
    "groq": (("GROQ_API_KEY",), "groq/llama-3.1-8b-instant"),
    "deepseek": (("DEEPSEEK_API_KEY",), "deepseek/deepseek-chat"),
}


def _usage_from(raw: object) -> TokenUsage | None:
    if raw is None:
        return None
    cached = 0
    details = getattr(raw, "prompt_tokens_details", None)
    if details is not None:
        cached = getattr(details, "cached_tokens", 0) or 0
    # Anthropic format
    cached = cached or getattr(raw, "cache_read_input_tokens", 0) or 0
    return TokenUsage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
        cached_tokens=cached,
    )


def _has_key(env_vars: tuple[str, ...]) -> bool:
    return any(os.getenv(name) for name in env_vars)


def detect_ollama_model(base_url: str = OLLAMA_BASE_URL) -> str | None:
    """Return an ``ollama/<name>`` model id if a local Ollama server has one."""
    try:
        resp = httpx.get(f"{base_url}/api/tags", timeout=0.5)
        if resp.status_code == 200:
            tags = resp.json().get("models", [])
            if tags:
                return f"ollama/{tags[0]['name'].split(':')[0]}"
    except (httpx.HTTPError, ValueError, KeyError) as e:
        log.debug(f"Ollama probe failed: {e}")
    return None


def detect_provider() -> tuple[str | None, str | None]:
    """Auto-detect the best available provider. Returns (provider, model)."""
    for provider, (env_vars, model) in PROVIDER_DEFAULTS.items():
        if _has_key(env_vars):
            log.info(f"Auto-detected provider {provider} from {env_vars[0]}")
            return provider, model

    model = detect_ollama_model()
    if model:
        log.info(f"Auto-detected provider ollama ({model})")
        return "ollama", model

    return None, None


class LiteLLMAdapter(Adapter):
    """Adapter for any model litellm can reach."""

    def __init__(
        self,
        provider: str,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        system_prompt: str | None = None,
        num_retries: int | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the adapter.

        Args:
            provider: Provider id this adapter is registered under
            model: The model identifier (e.g., "gpt-4o-mini", "claude-3-sonnet", "ollama/llama2")
            api_key: Optional API key (can also be set via environment variables)
            api_base: Optional API base URL for custom endpoints
            system_prompt: Optional system prompt to prepend to every request
            num_retries: Retries for opening the stream; a started stream is never retried
            **kwargs: Additional arguments passed to litellm
        """
        self._provider = provider
        self._model_id = model
        self.api_key = api_key
        self.api_base = api_base
        self.system_prompt = system_prompt
        self.num_retries = num_retries
        self.extra_kwargs = kwargs

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model_id(self) -> str:
        return self._model_id

    def _build_messages(self, history: Sequence[HistoryItem]) -> list[dict[str, str]]:
        """Build the full message list including system prompt."""
        result = []
        if self.system_prompt:
            result.append({"role": "system", "content": self.system_prompt})
        result.extend({"role": m["role"], "content": m["content"]} for m in history)
        return result

    def _build_kwargs(self, history: Sequence[HistoryItem], options: ChatOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "messages": self._build_messages(history),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            **self.extra_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.num_retries:
            kwargs["num_retries"] = self.num_retries
        return kwargs

    async def stream_chat(
        self,
        history: Sequence[HistoryItem],
        options: ChatOptions,
    ) -> AsyncIterator[Chunk]:
        """Stream a completion from litellm.

        Content deltas are yielded as they arrive. The finish reason is held
        back until the provider closes the stream so the terminal chunk can
        carry the usage block that follows it.
        """
        response = await acompletion(**self._build_kwargs(history, options))

        finish_reason: str | None = None
        usage: TokenUsage | None = None

        async for chunk in response:
            raw_usage = getattr(chunk, "usage", None)
            if raw_usage:
                usage = _usage_from(raw_usage)

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = getattr(choice, "delta", None)
            if delta is not None and delta.content:
                yield Chunk(content=delta.content)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        if finish_reason is not None:
            yield Chunk(finish_reason=finish_reason, usage=usage)

    def estimate_cost(self, usage: TokenUsage) -> float | None:
        try:
            prompt_cost, completion_cost = litellm.cost_per_token(
                model=self._model_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        except Exception as e:
            # litellm raises for models missing from its price map
            log.debug(f"No cost data for {self._model_id}: {e}")
            return None
        return prompt_cost + completion_cost


def _ollama_adapter(model: str | None, **kwargs: Any) -> LiteLLMAdapter:
    model = model or detect_ollama_model()
    if model is None:
        raise ValueError("No Ollama model available")
    return LiteLLMAdapter("ollama", model, api_base=OLLAMA_BASE_URL, **kwargs)


def create_default_registry(
    *,
    models: dict[str, str] | None = None,
    system_prompt: str | None = None,
    num_retries: int | None = None,
) -> AdapterRegistry:
    """Build a registry with a litellm adapter factory per configured provider.

    Hosted providers are registered when their API key is set; Ollama is always
    registered and resolves its model on first use.

    Args:
        models: Optional provider -> model overrides
        system_prompt: System prompt for every adapter
        num_retries: Stream-opening retries for every adapter
    """
    models = models or {}
    registry = AdapterRegistry()

    for provider, (env_vars, default_model) in PROVIDER_DEFAULTS.items():
        if not _has_key(env_vars):
            continue
        registry.register_factory(
            provider,
            functools.partial(
                LiteLLMAdapter,
                provider,
                models.get(provider, default_model),
                system_prompt=system_prompt,
                num_retries=num_retries,
            ),
        )

    registry.register_factory(
        "ollama",
        functools.partial(
            _ollama_adapter,
            models.get("ollama"),
            system_prompt=system_prompt,
            num_retries=num_retries,
        ),
    )
    return registry
