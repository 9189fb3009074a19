"""Transport protocol: the raw line I/O surface the control engine needs."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """Minimal protocol a transport must satisfy for ``ControlProtocol``.

    A transport moves newline-delimited JSON in both directions.  It knows
    nothing about message types or the control channel; those are layered
    on top by the engine.
    """

    async def connect(self) -> None:
        """Prepare for communication.  Fails if the transport was closed."""
        ...

    async def write(self, data: str) -> None:
        """Write one or more complete, newline-terminated JSON lines.

        Raises ``CLIConnectionError`` when not connected or after
        ``end_input()``/``close()``.
        """
        ...

    def read_messages(self) -> AsyncIterator[Any]:
        """Yield decoded JSON values until the stream ends.

        Single consumer.  Raises ``CLIJSONDecodeError`` on a malformed line
        and ``ProcessError`` when the remote side exits abnormally.
        """
        ...

    async def end_input(self) -> None:
        """Half-close: no further writes will be made."""
        ...

    async def close(self) -> None:
        """Release all resources.  Idempotent."""
        ...

    def is_ready(self) -> bool:
        """Whether the transport can currently send and receive."""
        ...
