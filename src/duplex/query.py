"""One-shot ``query()``: send a prompt, stream every message, disconnect."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from duplex.client import AgentSession, log_input_failure
from duplex.config.models import AgentOptions
from duplex.messages import Message, ResultMessage
from duplex.transport.base import Transport


async def query(
    prompt: str | AsyncIterable[dict[str, Any]],
    *,
    options: AgentOptions | None = None,
    transport: Transport | None = None,
) -> AsyncIterator[Message]:
    """Run one conversation and yield its messages until the stream ends.

    A string prompt is sent as a single user turn and input is ended after
    the first ``ResultMessage``, letting the agent exit.  An async iterable
    is streamed as the whole input.  The session is always disconnected,
    including when the caller stops iterating early.

    Example::

        async for message in query("What is 2 + 2?", options=options):
            print(message)
    """
    session = AgentSession(options, transport)
    input_task: asyncio.Task[None] | None = None
    try:
        if isinstance(prompt, str):
            await session.connect(prompt)
        else:
            await session.connect()
            input_task = asyncio.create_task(session.stream_input(prompt))
            input_task.add_done_callback(log_input_failure)

        input_open = isinstance(prompt, str)
        async for message in session.receive_messages():
            yield message
            if input_open and isinstance(message, ResultMessage):
                input_open = False
                await session.end_input()
    finally:
        if input_task is not None and not input_task.done():
            input_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await input_task
        await session.disconnect()
