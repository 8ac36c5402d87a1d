"""The simplest possible workspace chat: ask one question about a file."""

import asyncio

from workspace_chat import ChatPipeline


async def main() -> None:
    async with ChatPipeline.from_environment() as chat:
        chat.workspace.add_active_file("examples/basic.py")
        reply = await chat.send("What does this file do?")
        print(reply.content)


if __name__ == "__main__":
    asyncio.run(main())
