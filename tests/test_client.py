"""Tests for the AgentSession facade."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import patch

import pytest

from duplex.client import AgentSession
from duplex.config.models import AgentOptions, HookMatcher
from duplex.control.models import PermissionResultAllow
from duplex.errors import CLIConnectionError, ControlRequestError
from duplex.messages import AssistantMessage, ResultMessage
from duplex.transport.memory import InMemoryTransport
from duplex.transport.subprocess import SubprocessTransport

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _assistant(text: str) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "model": "claude-sonnet",
            "content": [{"type": "text", "text": text}],
        },
    }


def _result(session_id: str = "s1") -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "success",
        "duration_ms": 10,
        "duration_api_ms": 8,
        "is_error": False,
        "num_turns": 1,
        "session_id": session_id,
    }


class _AgentDouble(InMemoryTransport):
    """Scripted agent: answers control requests and replies to user turns."""

    def __init__(
        self,
        replies: list[dict[str, Any]] | None = None,
        server_info: dict[str, Any] | None = None,
        fail_subtype: str | None = None,
    ) -> None:
        super().__init__(on_write=self._respond)
        self.replies = replies or []
        self.server_info = server_info or {"commands": []}
        self.fail_subtype = fail_subtype

    async def _respond(self, message: dict[str, Any]) -> None:
        if message["type"] == "control_request":
            request_id = message["request_id"]
            subtype = message["request"]["subtype"]
            if subtype == self.fail_subtype:
                response = {
                    "subtype": "error",
                    "request_id": request_id,
                    "error": f"{subtype} refused",
                }
            else:
                payload = self.server_info if subtype == "initialize" else {}
                response = {
                    "subtype": "success",
                    "request_id": request_id,
                    "response": payload,
                }
            self.feed({"type": "control_response", "response": response})
        elif message["type"] == "user":
            for reply in self.replies:
                self.feed(reply)

    def control_subtypes(self) -> list[str]:
        return [m["request"]["subtype"] for m in self.written_of_type("control_request")]


async def _collect(agen: Any) -> list[Any]:
    return [message async for message in agen]


async def _prompts(*texts: str) -> Any:
    for text in texts:
        yield {"type": "user", "message": {"role": "user", "content": text}}


# ------------------------------------------------------------------ #
# Connection management
# ------------------------------------------------------------------ #


class TestConnect:
    async def test_connect_performs_handshake(self) -> None:
        transport = _AgentDouble(server_info={"commands": ["/help"], "output_style": "default"})
        session = AgentSession(transport=transport)

        await session.connect()

        assert session.is_connected
        assert transport.control_subtypes() == ["initialize"]
        assert session.server_info == {"commands": ["/help"], "output_style": "default"}
        assert session.get_server_info() == session.server_info
        await session.disconnect()

    async def test_connect_twice_raises(self) -> None:
        session = AgentSession(transport=_AgentDouble())
        await session.connect()
        with pytest.raises(CLIConnectionError, match="Already connected"):
            await session.connect()
        await session.disconnect()

    async def test_context_manager(self) -> None:
        transport = _AgentDouble()
        async with AgentSession(transport=transport) as session:
            assert session.is_connected
        assert not session.is_connected
        assert not transport.is_ready()

    async def test_disconnect_is_idempotent(self) -> None:
        session = AgentSession(transport=_AgentDouble())
        await session.connect()
        await session.disconnect()
        await session.disconnect()
        assert session.server_info is None

    async def test_options_applied_after_handshake(self) -> None:
        transport = _AgentDouble()
        options = AgentOptions(permission_mode="plan", model="claude-opus")
        session = AgentSession(options, transport)

        await session.connect()

        assert transport.control_subtypes() == [
            "initialize",
            "set_permission_mode",
            "set_model",
        ]
        await session.disconnect()

    async def test_hooks_registered_with_initialize(self) -> None:
        async def hook(hook_input: Any, tool_use_id: Any, context: Any) -> dict:
            return {}

        transport = _AgentDouble()
        options = AgentOptions(
            hooks={"PostToolUse": [HookMatcher(matcher="Write|Edit", hooks=[hook])]}
        )
        session = AgentSession(options, transport)
        await session.connect()

        init = transport.written_of_type("control_request")[0]["request"]
        assert init["hooks"] == {
            "PostToolUse": [{"matcher": "Write|Edit", "hookCallbackIds": ["hook_0"]}]
        }
        await session.disconnect()

    async def test_failed_handshake_closes_transport(self) -> None:
        transport = _AgentDouble(fail_subtype="initialize")
        session = AgentSession(transport=transport)

        with pytest.raises(ControlRequestError, match="initialize refused"):
            await session.connect()
        assert not session.is_connected
        assert not transport.is_ready()

    async def test_missing_command_without_transport(self) -> None:
        session = AgentSession(AgentOptions())
        with pytest.raises(CLIConnectionError, match="command is empty"):
            await session.connect()

    def test_builds_subprocess_transport(self, tmp_path: Any) -> None:
        options = AgentOptions(
            command="agent --output-format stream-json",
            cwd=tmp_path,
            env={"A": "1"},
            max_buffer_size=4096,
        )
        transport = AgentSession._build_transport(options)
        assert isinstance(transport, SubprocessTransport)
        assert transport._command == ["agent", "--output-format", "stream-json"]
        assert transport._max_buffer_size == 4096

    def test_prompt_tool_passed_to_command(self) -> None:
        options = AgentOptions(command=["agent"], permission_prompt_tool_name="stdio")
        transport = AgentSession._build_transport(options)
        assert transport._command == ["agent", "--permission-prompt-tool", "stdio"]
        assert options.command == ["agent"]

    def test_prompt_tool_flag_not_duplicated(self) -> None:
        options = AgentOptions(
            command=["agent", "--permission-prompt-tool", "mcp__perm"],
            permission_prompt_tool_name="stdio",
        )
        transport = AgentSession._build_transport(options)
        assert transport._command == ["agent", "--permission-prompt-tool", "mcp__perm"]


class TestPermissionOptions:
    async def test_callback_rejects_string_prompt(self) -> None:
        async def allow(tool_name: str, tool_input: dict, context: Any) -> Any:
            return PermissionResultAllow()

        session = AgentSession(AgentOptions(can_use_tool=allow), _AgentDouble())
        with pytest.raises(ValueError, match="streaming mode"):
            await session.connect("hello")
        assert not session.is_connected

    async def test_callback_sets_stdio_prompt_tool(self) -> None:
        async def allow(tool_name: str, tool_input: dict, context: Any) -> Any:
            return PermissionResultAllow()

        session = AgentSession(AgentOptions(can_use_tool=allow), _AgentDouble())
        await session.connect()
        assert session.options.permission_prompt_tool_name == "stdio"
        await session.disconnect()

    async def test_callback_spawns_agent_with_stdio_prompt_tool(self) -> None:
        async def allow(tool_name: str, tool_input: dict, context: Any) -> Any:
            return PermissionResultAllow()

        built: list[Any] = []
        build_subprocess = AgentSession._build_transport

        def build(options: AgentOptions) -> Any:
            built.append(build_subprocess(options))
            return _AgentDouble()

        session = AgentSession(AgentOptions(command="agent", can_use_tool=allow))
        with patch.object(AgentSession, "_build_transport", staticmethod(build)):
            await session.connect()
        assert built[0]._command == ["agent", "--permission-prompt-tool", "stdio"]
        await session.disconnect()


# ------------------------------------------------------------------ #
# Conversation
# ------------------------------------------------------------------ #


class TestConversation:
    async def test_query_writes_user_message(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect()

        await session.query("What is 2 + 2?", session_id="thread-7")

        assert transport.written_of_type("user") == [
            {
                "type": "user",
                "message": {"role": "user", "content": "What is 2 + 2?"},
                "parent_tool_use_id": None,
                "session_id": "thread-7",
            }
        ]
        await session.disconnect()

    async def test_query_default_session_id(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect()
        await session.query("hi")
        assert transport.written_of_type("user")[0]["session_id"] == "default"
        await session.disconnect()

    async def test_query_async_iterable_tags_session_id(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect()

        async def messages() -> Any:
            yield {"type": "user", "message": {"role": "user", "content": "a"}}
            yield {
                "type": "user",
                "message": {"role": "user", "content": "b"},
                "session_id": "mine",
            }

        await session.query(messages(), session_id="thread-2")

        assert [m["session_id"] for m in transport.written_of_type("user")] == [
            "thread-2",
            "mine",
        ]
        await session.disconnect()

    async def test_receive_response_stops_at_result(self) -> None:
        transport = _AgentDouble(
            replies=[_assistant("first"), _result(), _assistant("second"), _result()]
        )
        session = AgentSession(transport=transport)
        await session.connect()
        await session.query("go")

        turn_one = await _collect(session.receive_response())
        assert [type(m) for m in turn_one] == [AssistantMessage, ResultMessage]
        assert turn_one[0].content[0].text == "first"

        turn_two = await _collect(session.receive_response())
        assert [type(m) for m in turn_two] == [AssistantMessage, ResultMessage]
        assert turn_two[0].content[0].text == "second"
        assert session.is_connected
        await session.disconnect()

    async def test_two_line_scenario(self) -> None:
        transport = _AgentDouble(
            replies=[
                _assistant("2 + 2 equals 4"),
                {**_result("s1"), "total_cost_usd": 0.001},
            ]
        )
        session = AgentSession(transport=transport)
        await session.connect()
        await session.query("What is 2 + 2?")

        messages = await _collect(session.receive_response())

        assert len(messages) == 2
        assert isinstance(messages[0], AssistantMessage)
        assert [b.text for b in messages[0].content] == ["2 + 2 equals 4"]
        assert isinstance(messages[1], ResultMessage)
        assert messages[1].total_cost_usd == 0.001
        assert messages[1].session_id == "s1"
        await session.disconnect()

    async def test_receive_messages_until_stream_end(self) -> None:
        transport = _AgentDouble(replies=[_assistant("a"), _result(), _assistant("b")])
        session = AgentSession(transport=transport)
        await session.connect()
        await session.query("go")
        transport.finish()

        messages = await _collect(session.receive_messages())
        assert [type(m) for m in messages] == [
            AssistantMessage,
            ResultMessage,
            AssistantMessage,
        ]
        await session.disconnect()

    async def test_connect_with_string_prompt(self) -> None:
        transport = _AgentDouble(replies=[_assistant("hello"), _result()])
        session = AgentSession(transport=transport)
        await session.connect("hi there")

        assert transport.written_of_type("user")[0]["message"]["content"] == "hi there"
        messages = await _collect(session.receive_response())
        assert isinstance(messages[-1], ResultMessage)
        await session.disconnect()

    async def test_connect_with_async_iterable_prompt(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect(_prompts("one", "two"))

        async with asyncio.timeout(2.0):
            while len(transport.written_of_type("user")) < 2:
                await asyncio.sleep(0)
        assert not transport.input_ended
        await session.disconnect()

    async def test_stream_input_ends_input(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect()

        await session.stream_input(_prompts("only"), session_id="t1")

        assert transport.written_of_type("user")[0]["session_id"] == "t1"
        assert transport.input_ended
        await session.disconnect()


# ------------------------------------------------------------------ #
# Control operations
# ------------------------------------------------------------------ #


class TestControlOperations:
    async def test_operations_delegate(self) -> None:
        transport = _AgentDouble()
        session = AgentSession(transport=transport)
        await session.connect()

        await session.interrupt()
        await session.set_permission_mode("acceptEdits")
        await session.set_model(None)
        await session.rewind_files("user-msg-1")

        assert transport.control_subtypes() == [
            "initialize",
            "interrupt",
            "set_permission_mode",
            "set_model",
            "rewind_files",
        ]
        await session.disconnect()

    async def test_ended_output_fails_fast(self) -> None:
        transport = _AgentDouble(replies=[_assistant("bye"), _result()])
        session = AgentSession(AgentOptions(control_timeout=30.0), transport)
        await session.connect()
        await session.query("last one")
        transport.finish()

        messages = await _collect(session.receive_messages())
        assert isinstance(messages[-1], ResultMessage)
        assert not session.is_connected

        async with asyncio.timeout(1.0):
            with pytest.raises(CLIConnectionError, match="transport stream ended"):
                await session.interrupt()
            with pytest.raises(CLIConnectionError, match="transport stream ended"):
                await session.query("anyone there?")
        await session.end_input()
        await session.disconnect()

    async def test_interrupt_error_surfaces(self) -> None:
        session = AgentSession(transport=_AgentDouble(fail_subtype="interrupt"))
        await session.connect()
        with pytest.raises(ControlRequestError, match="interrupt refused"):
            await session.interrupt()
        await session.disconnect()

    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.query("hi"),
            lambda s: s.interrupt(),
            lambda s: s.set_permission_mode("plan"),
            lambda s: s.set_model("m"),
            lambda s: s.rewind_files("x"),
            lambda s: s.end_input(),
        ],
    )
    async def test_requires_connection(self, call: Any) -> None:
        session = AgentSession(transport=_AgentDouble())
        with pytest.raises(CLIConnectionError, match="Not connected"):
            await call(session)

    async def test_receive_requires_connection(self) -> None:
        session = AgentSession(transport=_AgentDouble())
        with pytest.raises(CLIConnectionError, match="Not connected"):
            await _collect(session.receive_response())
