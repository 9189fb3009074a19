"""Output messages: typed models and the JSON parser."""

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
from duplex.messages.parser import parse_message

__all__ = [
    "AssistantMessage",
    "AssistantMessageError",
    "ContentBlock",
    "Message",
    "ResultMessage",
    "StreamEvent",
    "SystemMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    "parse_message",
]
