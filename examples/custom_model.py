"""Pick the provider, model and system prompt, and keep conversations on disk."""

import asyncio

from workspace_chat import ChatPipeline, LiteLLMAdapter, ProjectRef, SQLitePersistence
from workspace_chat.adapter import AdapterRegistry

registry = AdapterRegistry()
registry.register(
    "anthropic",
    LiteLLMAdapter(
        "anthropic",
        "claude-sonnet-4-20250514",  # Or "gpt-4o", "ollama/llama3", etc.
        system_prompt="You are a senior engineer. Answer briefly.",
    ),
)


async def main() -> None:
    async with ChatPipeline(
        registry,
        SQLitePersistence(),
        default_provider="anthropic",
        temperature=0.2,
    ) as chat:
        chat.workspace.project = ProjectRef(name="my-service", path=".")
        chat.workspace.add_terminal_command("pytest -x")
        reply = await chat.send("The last test run failed. Where should I look first?")
        print(reply.content)
        if reply.metadata:
            print(f"\n{reply.metadata.token_count} tokens in {reply.metadata.response_time} ms")


if __name__ == "__main__":
    asyncio.run(main())
