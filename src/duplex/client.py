"""AgentSession: a stateful, turn-based conversation with an agent process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator
from types import TracebackType
from typing import Any

from duplex.config.models import AgentOptions
from duplex.constants import DEFAULT_SESSION_ID, PERMISSION_PROMPT_TOOL_FLAG
from duplex.control.engine import ControlProtocol
from duplex.control.models import PermissionMode
from duplex.control.registry import CallbackRegistry
from duplex.errors import CLIConnectionError
from duplex.messages import Message, ResultMessage
from duplex.transport.base import Transport
from duplex.transport.subprocess import SubprocessTransport

logger = logging.getLogger(__name__)

Prompt = str | AsyncIterable[dict[str, Any]]


def _user_message(prompt: str, session_id: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


class AgentSession:
    """Bidirectional, interactive session with an agent.

    Usage::

        async with AgentSession(options) as session:
            await session.query("What is 2 + 2?")
            async for message in session.receive_response():
                ...

    Args:
        options: Session options.  Defaults to ``AgentOptions()``.
        transport: Pre-built transport.  When omitted, ``connect()`` spawns
            ``options.command`` with a ``SubprocessTransport``.
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._options = options or AgentOptions()
        self._custom_transport = transport
        self._protocol: ControlProtocol | None = None
        self._input_task: asyncio.Task[None] | None = None

    @property
    def options(self) -> AgentOptions:
        """Effective options; updated by ``connect()``."""
        return self._options

    @property
    def is_connected(self) -> bool:
        """True from a completed handshake until disconnect or end of output."""
        return self._protocol is not None and self._protocol.is_ready

    @property
    def server_info(self) -> dict[str, Any] | None:
        """The agent's ``initialize`` response, once connected."""
        if self._protocol is None:
            return None
        return self._protocol.initialization_result

    def get_server_info(self) -> dict[str, Any] | None:
        return self.server_info

    # ------------------------------------------------------------------ #
    # Connection management
    # ------------------------------------------------------------------ #

    async def connect(self, prompt: Prompt | None = None) -> None:
        """Connect, perform the handshake and send *prompt*, if given.

        A string prompt is sent as one user message.  An async iterable of
        message dicts is streamed in the background.

        Raises:
            CLIConnectionError: If already connected or the transport fails.
            ValueError: If the options conflict with *prompt*.
        """
        if self._protocol is not None:
            msg = "Already connected. Call disconnect() first."
            raise CLIConnectionError(msg)

        self._options = self._configure_options(self._options, prompt)
        options = self._options
        transport = self._custom_transport or self._build_transport(options)
        registry = CallbackRegistry(permission_callback=options.can_use_tool)
        protocol = ControlProtocol(
            transport,
            registry,
            initialize_timeout=options.initialize_timeout,
            control_timeout=options.control_timeout,
            stream_close_timeout=options.stream_close_timeout,
            max_queue=options.max_queue,
        )

        self._protocol = protocol
        try:
            await protocol.start()
            await protocol.initialize(options.hooks)
            if options.permission_mode is not None:
                await protocol.set_permission_mode(options.permission_mode)
            if options.model is not None:
                await protocol.set_model(options.model)
        except BaseException:
            self._protocol = None
            await protocol.close()
            raise

        logger.debug("Session connected")
        if prompt is not None:
            await self._send_initial_prompt(prompt)

    async def disconnect(self) -> None:
        """Close the connection.  Idempotent."""
        protocol = self._protocol
        if protocol is None:
            return
        self._protocol = None
        if self._input_task is not None and not self._input_task.done():
            self._input_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._input_task
        self._input_task = None
        await protocol.close()
        logger.debug("Session disconnected")

    async def __aenter__(self) -> AgentSession:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------ #
    # Conversation
    # ------------------------------------------------------------------ #

    async def query(
        self, prompt: Prompt, session_id: str = DEFAULT_SESSION_ID
    ) -> None:
        """Send a new user turn.

        Async-iterable prompts are written message by message; a message
        without ``session_id`` is tagged with *session_id*.
        """
        protocol = self._require_protocol()
        if isinstance(prompt, str):
            await protocol.write_message(_user_message(prompt, session_id))
            return
        async for message in prompt:
            if "session_id" not in message:
                message = {**message, "session_id": session_id}
            await protocol.write_message(message)

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield every message until the stream ends."""
        protocol = self._require_protocol()
        async for message in protocol.receive_messages():
            yield message

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next ``ResultMessage``.

        The connection stays open; the next call resumes with the message
        after that result.
        """
        async for message in self.receive_messages():
            yield message
            if isinstance(message, ResultMessage):
                return

    async def stream_input(
        self,
        messages: AsyncIterable[dict[str, Any]],
        session_id: str = DEFAULT_SESSION_ID,
    ) -> None:
        """Write *messages* as the entire input, then end it.

        With callbacks registered, input stays open until the first result
        (bounded by ``stream_close_timeout``) so control responses can still
        be delivered.
        """
        protocol = self._require_protocol()

        async def tagged() -> AsyncIterator[dict[str, Any]]:
            async for message in messages:
                if "session_id" not in message:
                    message = {**message, "session_id": session_id}
                yield message

        await protocol.stream_input(tagged())

    async def end_input(self) -> None:
        """Tell the agent no more input follows."""
        await self._require_protocol().end_input()

    # ------------------------------------------------------------------ #
    # Control operations
    # ------------------------------------------------------------------ #

    async def interrupt(self) -> None:
        """Ask the agent to stop the turn in progress."""
        await self._require_protocol().interrupt()

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        await self._require_protocol().set_permission_mode(mode)

    async def set_model(self, model: str | None) -> None:
        await self._require_protocol().set_model(model)

    async def rewind_files(self, user_message_id: str) -> None:
        await self._require_protocol().rewind_files(user_message_id)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _require_protocol(self) -> ControlProtocol:
        if self._protocol is None:
            msg = "Not connected. Call connect() first."
            raise CLIConnectionError(msg)
        return self._protocol

    @staticmethod
    def _configure_options(options: AgentOptions, prompt: Prompt | None) -> AgentOptions:
        if options.can_use_tool is None:
            return options
        if isinstance(prompt, str):
            msg = (
                "can_use_tool callback requires streaming mode; "
                "provide the prompt as an async iterable or None instead of a string"
            )
            raise ValueError(msg)
        if options.permission_prompt_tool_name:
            msg = (
                "can_use_tool callback cannot be used with "
                "permission_prompt_tool_name; use one or the other"
            )
            raise ValueError(msg)
        return options.model_copy(update={"permission_prompt_tool_name": "stdio"})

    @staticmethod
    def _build_transport(options: AgentOptions) -> Transport:
        if not options.command:
            msg = "AgentOptions.command is empty and no transport was provided"
            raise CLIConnectionError(msg)
        command = list(options.command)
        tool_name = options.permission_prompt_tool_name
        if tool_name and PERMISSION_PROMPT_TOOL_FLAG not in command:
            command += [PERMISSION_PROMPT_TOOL_FLAG, tool_name]
        return SubprocessTransport(
            command,
            cwd=options.cwd,
            env=options.env,
            max_buffer_size=options.max_buffer_size,
            stderr=options.stderr,
        )

    async def _send_initial_prompt(self, prompt: Prompt) -> None:
        if isinstance(prompt, str):
            await self.query(prompt)
            return
        self._input_task = asyncio.create_task(self.query(prompt))
        self._input_task.add_done_callback(log_input_failure)


def log_input_failure(task: asyncio.Task[None]) -> None:
    """Done-callback that logs a failed background input stream."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Streaming the initial prompt failed: %s", exc)
