"""Watch a response stream, and stop it if it takes too long."""

import asyncio

from workspace_chat import ChatPipeline, PipelineState, ProcessingCompleted, StateChanged


def on_event(event) -> None:
    if isinstance(event, StateChanged) and event.state is PipelineState.STREAMING:
        print("[streaming]")
    elif isinstance(event, ProcessingCompleted):
        print(f"[done: {len(event.content)} chars]")


async def main() -> None:
    async with ChatPipeline.from_environment() as chat:
        chat.add_listener(on_event)
        task = asyncio.create_task(chat.send("Write a long poem about merge conflicts."))

        await asyncio.sleep(3)
        if not task.done():
            chat.cancel_all()  # Whatever arrived so far is kept

        reply = await task
        print(reply.content)
        print(f"[{reply.status.value}]")


if __name__ == "__main__":
    asyncio.run(main())
