"""In-memory transport backed by an ``asyncio.Queue``, for tests and embedding."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from duplex.errors import CLIConnectionError, CLIJSONDecodeError

#: Marks the end of the inbound stream.
_EOF = object()

WriteHook = Callable[[dict[str, Any]], Awaitable[None]]


class InMemoryTransport:
    """Transport whose inbound side is fed by the caller.

    Inbound data is queued with ``feed()`` (already-decoded objects) or
    ``feed_line()`` (raw text, decoded on read), and ended with
    ``finish()``.  Every outbound line is decoded and appended to
    ``written``; ``on_write`` is awaited per outbound message so a test
    can play the remote side, e.g. by answering control requests.
    """

    def __init__(self, on_write: WriteHook | None = None) -> None:
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()
        self._on_write = on_write
        self.written: list[dict[str, Any]] = []
        self._connected = False
        self._input_ended = False
        self._closed = False

    # ------------------------------------------------------------------ #
    # Test controls
    # ------------------------------------------------------------------ #

    def feed(self, message: Any) -> None:
        """Queue an already-decoded inbound value."""
        self._inbound.put_nowait(message)

    def feed_line(self, line: str) -> None:
        """Queue raw inbound text; it is JSON-decoded when read."""
        self._inbound.put_nowait(line)

    def fail(self, exc: BaseException) -> None:
        """Make the reader raise *exc* once it reaches this point."""
        self._inbound.put_nowait(exc)

    def finish(self) -> None:
        """End the inbound stream."""
        self._inbound.put_nowait(_EOF)

    def written_of_type(self, message_type: str) -> list[dict[str, Any]]:
        """Outbound messages whose top-level ``type`` is *message_type*."""
        return [m for m in self.written if m.get("type") == message_type]

    # ------------------------------------------------------------------ #
    # Transport protocol
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        if self._closed:
            msg = "Transport is closed"
            raise CLIConnectionError(msg)
        self._connected = True

    async def write(self, data: str) -> None:
        if not self.is_ready() or self._input_ended:
            msg = "Transport is not ready for writing"
            raise CLIConnectionError(msg)
        for line in data.splitlines():
            if not line.strip():
                continue
            message = json.loads(line)
            self.written.append(message)
            if self._on_write is not None:
                await self._on_write(message)

    async def read_messages(self) -> AsyncIterator[Any]:
        if not self._connected:
            msg = "Not connected"
            raise CLIConnectionError(msg)
        while True:
            item = await self._inbound.get()
            if item is _EOF:
                return
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, str):
                try:
                    yield json.loads(item)
                except json.JSONDecodeError as exc:
                    raise CLIJSONDecodeError(item, exc) from exc
            else:
                yield item

    async def end_input(self) -> None:
        self._input_ended = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        self._inbound.put_nowait(_EOF)

    def is_ready(self) -> bool:
        return self._connected and not self._closed

    @property
    def input_ended(self) -> bool:
        """Whether ``end_input()`` has been called."""
        return self._input_ended
