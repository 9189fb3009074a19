"""ControlProtocol: one read loop multiplexing agent output and control traffic."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import uuid
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

from duplex.constants import (
    CONTROL_CANCEL_REQUEST,
    CONTROL_REQUEST,
    CONTROL_RESPONSE,
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_INITIALIZE_TIMEOUT,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_STREAM_CLOSE_TIMEOUT,
)
from duplex.control.models import (
    HookContext,
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
    hook_output_to_wire,
    parse_hook_input,
    parse_permission_suggestions,
)
from duplex.control.registry import CallbackRegistry
from duplex.errors import (
    CLIConnectionError,
    ControlRequestError,
    ControlTimeoutError,
    MessageParseError,
)
from duplex.messages import Message, ResultMessage, parse_message
from duplex.transport.base import Transport

if TYPE_CHECKING:
    from duplex.config.models import HookMatcher

logger = logging.getLogger(__name__)

#: Queued after the last output item; ends ``receive_messages``.
_END = object()


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


class _RequestRejected(Exception):
    """An inbound control request the engine cannot serve."""


async def _invoke(callback: Callable[..., Any], *args: Any) -> Any:
    """Call a host callback that may be sync or async."""
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ControlProtocol:
    """Drives the control protocol over a single transport.

    A background task drains ``transport.read_messages()`` and routes each
    decoded object:

    * ``control_response`` resolves the matching pending outbound request;
    * ``control_request`` is dispatched to the host callbacks in its own
      task, and the answer is written back with the same ``request_id``;
    * anything else is parsed into a typed ``Message`` and queued, in
      arrival order, for ``receive_messages()``.

    Args:
        transport: The connection to the agent.  Owned by this engine from
            ``start()`` onwards.
        registry: Host permission and hook callbacks.
        initialize_timeout: Seconds to wait for the ``initialize`` response.
        control_timeout: Seconds to wait for any other control response.
        stream_close_timeout: Seconds ``stream_input()`` keeps stdin open
            waiting for the first result when callbacks are registered.
        max_queue: Capacity of the output queue.
    """

    def __init__(
        self,
        transport: Transport,
        registry: CallbackRegistry,
        *,
        initialize_timeout: float = DEFAULT_INITIALIZE_TIMEOUT,
        control_timeout: float = DEFAULT_CONTROL_TIMEOUT,
        stream_close_timeout: float = DEFAULT_STREAM_CLOSE_TIMEOUT,
        max_queue: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._initialize_timeout = initialize_timeout
        self._control_timeout = control_timeout
        self._stream_close_timeout = stream_close_timeout

        self._state = ConnectionState.DISCONNECTED
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._request_counter = 0
        self._request_tasks: set[asyncio.Task[None]] = set()
        self._read_task: asyncio.Task[None] | None = None
        self._first_result = asyncio.Event()
        self._stream_ended = False
        self._reader_done = False
        self._initialization_result: dict[str, Any] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        """Whether requests and input can be sent.

        False once the read loop has ended, even before ``close()``.
        """
        return self._state is ConnectionState.READY and not self._reader_done

    @property
    def initialization_result(self) -> dict[str, Any] | None:
        """The agent's response to ``initialize``, once received."""
        return self._initialization_result

    @property
    def pending_count(self) -> int:
        """Number of outbound control requests awaiting a response."""
        return len(self._pending)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Connect the transport and begin the background read loop."""
        if self._state is not ConnectionState.DISCONNECTED:
            msg = f"Cannot start control protocol in state '{self._state.value}'"
            raise CLIConnectionError(msg)
        self._state = ConnectionState.CONNECTING
        try:
            await self._transport.connect()
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._read_task = asyncio.create_task(self._read_loop())

    async def initialize(
        self, hooks: Mapping[str, Sequence[HookMatcher]] | None = None
    ) -> dict[str, Any]:
        """Perform the ``initialize`` handshake, registering *hooks*.

        Returns the agent's response payload (available commands, output
        style and the like), also kept as ``initialization_result``.
        """
        if self._state is not ConnectionState.CONNECTING:
            msg = f"Cannot initialize in state '{self._state.value}'"
            raise CLIConnectionError(msg)
        hooks_config = self._registry.build_hooks_config(hooks)
        request = {"subtype": "initialize", "hooks": hooks_config or None}
        result = await self.send_control_request(
            request, timeout=self._initialize_timeout
        )
        self._initialization_result = result
        self._state = ConnectionState.READY
        logger.debug(
            "Control protocol ready (%d hook callbacks)", self._registry.hook_count
        )
        return result

    async def close(self) -> None:
        """Tear down the read loop, in-flight callbacks and the transport.

        Every pending outbound request fails with ``CLIConnectionError``.
        Idempotent.
        """
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self._state = ConnectionState.CLOSING

        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task

        tasks = list(self._request_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._fail_pending(CLIConnectionError("Connection closed"))
        try:
            await self._transport.close()
        finally:
            self._state = ConnectionState.CLOSED
            self._first_result.set()
            with contextlib.suppress(asyncio.QueueFull):
                self._queue.put_nowait(_END)
            logger.debug("Control protocol closed")

    # ------------------------------------------------------------------ #
    # Outbound control requests
    # ------------------------------------------------------------------ #

    async def send_control_request(
        self, request: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        """Send a control request and wait for its correlated response.

        Args:
            request: The ``request`` body; must carry a ``subtype``.
            timeout: Seconds to wait.  Defaults to ``control_timeout``.

        Returns:
            The ``response`` payload of a success response (``{}`` if absent).

        Raises:
            CLIConnectionError: If the connection is not ready or closes
                before the response arrives.
            ControlRequestError: If the agent answers with an error.
            ControlTimeoutError: If no response arrives in time.
        """
        subtype = request.get("subtype")
        allowed = (
            (ConnectionState.CONNECTING, ConnectionState.READY)
            if subtype == "initialize"
            else (ConnectionState.READY,)
        )
        if self._state not in allowed:
            msg = f"Cannot send '{subtype}' request: connection is {self._state.value}"
            raise CLIConnectionError(msg)
        if self._reader_done:
            msg = f"Cannot send '{subtype}' request: transport stream ended"
            raise CLIConnectionError(msg)

        request_id = self._next_request_id()
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        try:
            await self._write(
                {"type": CONTROL_REQUEST, "request_id": request_id, "request": request}
            )
            wait = self._control_timeout if timeout is None else timeout
            try:
                return await asyncio.wait_for(future, timeout=wait)
            except TimeoutError as exc:
                msg = f"Control request timeout: {subtype}"
                raise ControlTimeoutError(msg) from exc
        finally:
            self._pending.pop(request_id, None)

    async def interrupt(self) -> None:
        await self.send_control_request({"subtype": "interrupt"})

    async def set_permission_mode(self, mode: str) -> None:
        await self.send_control_request({"subtype": "set_permission_mode", "mode": mode})

    async def set_model(self, model: str | None) -> None:
        await self.send_control_request({"subtype": "set_model", "model": model})

    async def rewind_files(self, user_message_id: str) -> None:
        """Roll tracked files back to their state at *user_message_id*."""
        await self.send_control_request(
            {"subtype": "rewind_files", "user_message_id": user_message_id}
        )

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{self._request_counter}_{uuid.uuid4().hex[:8]}"

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    # ------------------------------------------------------------------ #
    # Input
    # ------------------------------------------------------------------ #

    async def write_message(self, message: dict[str, Any]) -> None:
        """Write one input message (typically a user turn) to the agent."""
        if self._state is not ConnectionState.READY:
            msg = f"Cannot write message: connection is {self._state.value}"
            raise CLIConnectionError(msg)
        if self._reader_done:
            msg = "Cannot write message: transport stream ended"
            raise CLIConnectionError(msg)
        await self._write(message)

    async def stream_input(self, stream: AsyncIterable[dict[str, Any]]) -> None:
        """Write every message from *stream*, then end the input.

        When callbacks are registered the agent still needs stdin to send
        control responses, so input stays open until the first result
        arrives or ``stream_close_timeout`` elapses.
        """
        async for message in stream:
            if not self.is_ready:
                break
            await self.write_message(message)

        if self._registry.hook_count or self._registry.permission_callback:
            try:
                await asyncio.wait_for(
                    self._first_result.wait(), timeout=self._stream_close_timeout
                )
            except TimeoutError:
                logger.debug(
                    "No result within %.1fs; closing input anyway",
                    self._stream_close_timeout,
                )
        await self.end_input()

    async def end_input(self) -> None:
        await self._transport.end_input()

    async def _write(self, message: dict[str, Any]) -> None:
        await self._transport.write(json.dumps(message) + "\n")

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield parsed output messages in arrival order.

        A queued ``MessageParseError`` is raised in place of its message; a
        later call resumes with the next item.  A fatal transport error is
        raised the same way, after which the stream ends.
        """
        while not self._stream_ended:
            if self._state is ConnectionState.CLOSED and self._queue.empty():
                return
            item = await self._queue.get()
            if item is _END:
                self._stream_ended = True
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    # ------------------------------------------------------------------ #
    # Background read loop
    # ------------------------------------------------------------------ #

    async def _read_loop(self) -> None:
        """Drain the transport until it ends, routing every object."""
        error: BaseException | None = None
        try:
            async for data in self._transport.read_messages():
                await self._route(data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Control protocol read loop failed: %s", exc)
            error = exc
        else:
            logger.debug("Transport stream ended")

        self._reader_done = True
        self._fail_pending(error or CLIConnectionError("Transport stream ended"))
        # Nothing more can arrive; release stream_input().
        self._first_result.set()
        if error is not None:
            await self._queue.put(error)
        await self._queue.put(_END)

    async def _route(self, data: Any) -> None:
        msg_type = data.get("type") if isinstance(data, dict) else None

        if msg_type == CONTROL_RESPONSE:
            self._resolve_response(data)

        elif msg_type == CONTROL_REQUEST:
            task = asyncio.create_task(self.handle_control_request(data))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)

        elif msg_type == CONTROL_CANCEL_REQUEST:
            logger.debug("Ignoring control cancel request: %s", data.get("request_id"))

        else:
            try:
                message = parse_message(data)
            except MessageParseError as exc:
                logger.warning("Unparseable agent output: %s", exc)
                await self._queue.put(exc)
                return
            if isinstance(message, ResultMessage):
                self._first_result.set()
            await self._queue.put(message)

    def _resolve_response(self, data: dict[str, Any]) -> None:
        response = data.get("response")
        if not isinstance(response, dict):
            logger.warning("Ignoring malformed control response: %r", data)
            return

        request_id = response.get("request_id")
        future = (
            self._pending.pop(request_id, None) if isinstance(request_id, str) else None
        )
        if future is None or future.done():
            logger.warning(
                "Ignoring control response for unknown request %r "
                "(stale, duplicate or timed out)",
                request_id,
            )
            return

        if response.get("subtype") == "error":
            error = response.get("error") or "Unknown control request error"
            future.set_exception(ControlRequestError(str(error)))
        else:
            payload = response.get("response")
            future.set_result(payload if isinstance(payload, dict) else {})

    # ------------------------------------------------------------------ #
    # Inbound control requests
    # ------------------------------------------------------------------ #

    async def handle_control_request(self, message: dict[str, Any]) -> None:
        """Serve one inbound ``control_request`` and write its response.

        Failures of any kind, including exceptions from host callbacks,
        become an error response; nothing propagates to the read loop.
        """
        request_id = message.get("request_id")
        request = message.get("request")
        subtype = request.get("subtype") if isinstance(request, dict) else None
        try:
            if not isinstance(request, dict):
                msg = "Invalid request data"
                raise _RequestRejected(msg)
            if subtype == "can_use_tool":
                payload = await self._handle_permission_request(request)
            elif subtype == "hook_callback":
                payload = await self._handle_hook_request(request)
            else:
                msg = f"Unsupported control request subtype: {subtype}"
                raise _RequestRejected(msg)
        except asyncio.CancelledError:
            raise
        except _RequestRejected as exc:
            logger.warning("Rejecting control request %s: %s", request_id, exc)
            await self._respond(request_id, error=str(exc))
        except Exception as exc:
            logger.exception("Control request %s (%s) failed", request_id, subtype)
            await self._respond(request_id, error=str(exc))
        else:
            await self._respond(request_id, payload=payload)

    async def _handle_permission_request(
        self, request: dict[str, Any]
    ) -> dict[str, Any]:
        callback = self._registry.permission_callback
        if callback is None:
            msg = "can_use_tool callback is not provided"
            raise _RequestRejected(msg)

        tool_name = request.get("tool_name")
        tool_input = request.get("input")
        if not isinstance(tool_name, str) or not isinstance(tool_input, dict):
            msg = "Invalid request data"
            raise _RequestRejected(msg)

        context = ToolPermissionContext(
            suggestions=parse_permission_suggestions(
                request.get("permission_suggestions")
            )
        )
        result = await _invoke(callback, tool_name, tool_input, context)

        match result:
            case PermissionResultAllow():
                payload: dict[str, Any] = {
                    "behavior": "allow",
                    "updatedInput": (
                        result.updated_input
                        if result.updated_input is not None
                        else tool_input
                    ),
                }
                if result.updated_permissions is not None:
                    payload["updatedPermissions"] = [
                        update.to_dict() for update in result.updated_permissions
                    ]
                return payload
            case PermissionResultDeny():
                return {
                    "behavior": "deny",
                    "message": result.message,
                    "interrupt": result.interrupt,
                }
        msg = (
            "Permission callback must return PermissionResultAllow or "
            f"PermissionResultDeny, got {type(result).__name__}"
        )
        raise TypeError(msg)

    async def _handle_hook_request(self, request: dict[str, Any]) -> dict[str, Any]:
        callback_id = request.get("callback_id")
        callback = (
            self._registry.get_hook(callback_id)
            if isinstance(callback_id, str)
            else None
        )
        if callback is None:
            msg = f"No hook callback found for ID: {callback_id}"
            raise _RequestRejected(msg)

        try:
            hook_input = parse_hook_input(request.get("input"))
        except ValueError as exc:
            raise _RequestRejected(str(exc)) from exc

        tool_use_id = request.get("tool_use_id")
        output = await _invoke(
            callback,
            hook_input,
            tool_use_id if isinstance(tool_use_id, str) else None,
            HookContext(),
        )
        return hook_output_to_wire(output)

    async def _respond(
        self,
        request_id: Any,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if error is not None:
            response: dict[str, Any] = {
                "subtype": "error",
                "request_id": request_id,
                "error": error,
            }
        else:
            response = {
                "subtype": "success",
                "request_id": request_id,
                "response": payload or {},
            }
        try:
            await self._write({"type": CONTROL_RESPONSE, "response": response})
        except CLIConnectionError as exc:
            logger.warning(
                "Could not send control response for %s: %s", request_id, exc
            )
