"""Parse decoded JSON objects from the agent into typed output messages."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, ValidationError

from duplex.errors import MessageParseError
from duplex.messages.models import (
    AssistantMessage,
    AssistantMessageError,
    ContentBlock,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

logger = logging.getLogger(__name__)

_BLOCK_MODELS: dict[str, type[BaseModel]] = {
    "text": TextBlock,
    "thinking": ThinkingBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}

_RESULT_REQUIRED = (
    "subtype",
    "duration_ms",
    "duration_api_ms",
    "is_error",
    "num_turns",
    "session_id",
)


def parse_message(data: Any) -> Message:
    """Parse one decoded JSON value into a typed message.

    Args:
        data: A value produced by ``json.loads`` for a single line.

    Returns:
        The matching ``Message`` variant, fully constructed.

    Raises:
        MessageParseError: If *data* is not an object, has no string
            ``type``, names an unknown type, or lacks a field the type
            requires.  ``exc.data`` is *data* itself.
    """
    if not isinstance(data, dict):
        msg = f"Invalid message data type (expected dict, got {type(data).__name__})"
        raise MessageParseError(msg, data)

    message_type = data.get("type")
    if not isinstance(message_type, str):
        raise MessageParseError("Message missing 'type' field", data)

    builder = _BUILDERS.get(message_type)
    if builder is None:
        raise MessageParseError(f"Unknown message type: {message_type}", data)

    try:
        return builder(data)
    except ValidationError as exc:
        msg = f"Missing required field in {message_type} message: {_describe(exc)}"
        raise MessageParseError(msg, data) from exc


# ------------------------------------------------------------------ #
# Per-type builders
# ------------------------------------------------------------------ #


def _parse_user(data: dict[str, Any]) -> UserMessage:
    message = _require_mapping(data, "message", "user")
    if "content" not in message:
        raise _missing("user", "message.content", data)

    content = message["content"]
    if isinstance(content, str):
        blocks: list[ContentBlock] = [TextBlock(text=content)]
    elif isinstance(content, list):
        blocks = _parse_content_blocks(content)
    else:
        msg = (
            "Missing required field in user message: "
            f"message.content must be a string or a list, got {type(content).__name__}"
        )
        raise MessageParseError(msg, data)

    return UserMessage(
        content=blocks,
        parent_tool_use_id=_optional_str(data, "parent_tool_use_id"),
        uuid=_optional_str(data, "uuid"),
    )


def _parse_assistant(data: dict[str, Any]) -> AssistantMessage:
    message = _require_mapping(data, "message", "assistant")
    content = message.get("content")
    if not isinstance(content, list):
        raise _missing("assistant", "message.content", data)

    payload: dict[str, Any] = {
        "content": _parse_content_blocks(content),
        "parent_tool_use_id": _optional_str(data, "parent_tool_use_id"),
        "error": _map_assistant_error(message.get("error")),
    }
    if "model" in message:
        payload["model"] = message["model"]
    return AssistantMessage.model_validate(payload)


def _parse_system(data: dict[str, Any]) -> SystemMessage:
    payload = _pick(data, ("subtype",))
    payload["data"] = dict(data)
    return SystemMessage.model_validate(payload)


def _parse_result(data: dict[str, Any]) -> ResultMessage:
    payload = _pick(data, _RESULT_REQUIRED)

    # Optional fields of the wrong kind are treated as absent.
    cost = data.get("total_cost_usd")
    if isinstance(cost, int | float) and not isinstance(cost, bool):
        payload["total_cost_usd"] = float(cost)
    usage = data.get("usage")
    if isinstance(usage, dict):
        payload["usage"] = usage
    result = data.get("result")
    if isinstance(result, str):
        payload["result"] = result
    if data.get("structured_output") is not None:
        payload["structured_output"] = data["structured_output"]

    return ResultMessage.model_validate(payload)


def _parse_stream_event(data: dict[str, Any]) -> StreamEvent:
    payload = _pick(data, ("uuid", "session_id", "event"))
    payload["parent_tool_use_id"] = _optional_str(data, "parent_tool_use_id")
    return StreamEvent.model_validate(payload)


_BUILDERS: dict[str, Callable[[dict[str, Any]], Message]] = {
    "user": _parse_user,
    "assistant": _parse_assistant,
    "system": _parse_system,
    "result": _parse_result,
    "stream_event": _parse_stream_event,
}


# ------------------------------------------------------------------ #
# Content blocks
# ------------------------------------------------------------------ #


def _parse_content_blocks(blocks: list[Any]) -> list[ContentBlock]:
    """Parse a content array, skipping entries with an unknown ``type``.

    A known block type with a missing field raises ``ValidationError``,
    which fails the enclosing message.
    """
    parsed: list[ContentBlock] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        model = _BLOCK_MODELS.get(block_type) if isinstance(block_type, str) else None
        if model is None:
            logger.debug("Skipping content block of unknown type %r", block_type)
            continue

        fields = _pick(block, model.model_fields)
        if model is ToolResultBlock:
            if fields.get("content") is None:
                fields.pop("content", None)
            if not isinstance(fields.get("is_error"), bool):
                fields.pop("is_error", None)
        parsed.append(model.model_validate(fields))  # type: ignore[arg-type]
    return parsed


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _map_assistant_error(value: Any) -> AssistantMessageError | None:
    if not isinstance(value, str):
        return None
    try:
        return AssistantMessageError(value)
    except ValueError:
        return AssistantMessageError.UNKNOWN


def _require_mapping(
    data: dict[str, Any], key: str, message_type: str
) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise _missing(message_type, key, data)
    return value


def _missing(message_type: str, field: str, data: Any) -> MessageParseError:
    return MessageParseError(
        f"Missing required field in {message_type} message: {field}", data
    )


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _pick(data: dict[str, Any], keys: Iterable[str]) -> dict[str, Any]:
    return {k: data[k] for k in keys if k in data}


def _describe(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(s) for s in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
