"""Pydantic v2 models for agent output messages and their content blocks."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _Frozen(BaseModel):
    """Immutable, strictly-typed base shared by every block and message."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")


# ------------------------------------------------------------------ #
# Content blocks
# ------------------------------------------------------------------ #


class TextBlock(_Frozen):
    """Plain text produced by the agent or the user."""

    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_Frozen):
    """Extended-thinking content with its verification signature."""

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str


class ToolUseBlock(_Frozen):
    """A tool invocation requested by the agent."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(_Frozen):
    """The result of a tool invocation fed back to the agent."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: bool | None = None


def _type_discriminator(v: Any) -> str:
    """Extract the ``type`` tag from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


ContentBlock = Annotated[
    Annotated[TextBlock, Tag("text")]
    | Annotated[ThinkingBlock, Tag("thinking")]
    | Annotated[ToolUseBlock, Tag("tool_use")]
    | Annotated[ToolResultBlock, Tag("tool_result")],
    Discriminator(_type_discriminator),
]
"""Discriminated union of all content block types."""


# ------------------------------------------------------------------ #
# Output messages
# ------------------------------------------------------------------ #


class AssistantMessageError(StrEnum):
    """Error categories the agent attaches to a failed assistant turn."""

    AUTHENTICATION_FAILED = "authentication_failed"
    BILLING_ERROR = "billing_error"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


class UserMessage(_Frozen):
    """A user turn, or tool results echoed back by the agent."""

    type: Literal["user"] = "user"
    content: list[ContentBlock]
    parent_tool_use_id: str | None = None
    uuid: str | None = None


class AssistantMessage(_Frozen):
    """Content produced by the model."""

    type: Literal["assistant"] = "assistant"
    content: list[ContentBlock]
    model: str
    parent_tool_use_id: str | None = None
    error: AssistantMessageError | None = None


class SystemMessage(_Frozen):
    """System notification; ``data`` keeps the full raw object."""

    type: Literal["system"] = "system"
    subtype: str
    data: dict[str, Any] = Field(description="Raw message, including unknown fields")


class ResultMessage(_Frozen):
    """Final message of a turn, carrying cost and usage."""

    type: Literal["result"] = "result"
    subtype: str
    duration_ms: int
    duration_api_ms: int
    is_error: bool
    num_turns: int
    session_id: str
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    structured_output: Any = None


class StreamEvent(_Frozen):
    """Partial-message streaming event wrapping a raw API event."""

    type: Literal["stream_event"] = "stream_event"
    uuid: str
    session_id: str
    event: dict[str, Any]
    parent_tool_use_id: str | None = None


Message = Annotated[
    Annotated[UserMessage, Tag("user")]
    | Annotated[AssistantMessage, Tag("assistant")]
    | Annotated[SystemMessage, Tag("system")]
    | Annotated[ResultMessage, Tag("result")]
    | Annotated[StreamEvent, Tag("stream_event")],
    Discriminator(_type_discriminator),
]
"""Discriminated union of all output message types."""
