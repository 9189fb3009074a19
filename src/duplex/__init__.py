"""duplex: host-side runtime for an agent process's JSON control protocol."""

__version__ = "0.1.0"

from duplex.client import AgentSession
from duplex.config import AgentOptions, ConfigError, HookMatcher, load_options
from duplex.control import (
    AsyncHookOutput,
    CallbackRegistry,
    ConnectionState,
    ControlProtocol,
    HookContext,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionUpdate,
    SyncHookOutput,
    ToolPermissionContext,
)
from duplex.errors import (
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ControlRequestError,
    ControlTimeoutError,
    DuplexError,
    MessageParseError,
    ProcessError,
)
from duplex.messages import (
    AssistantMessage,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    parse_message,
)
from duplex.query import query
from duplex.transport import InMemoryTransport, SubprocessTransport, Transport

__all__ = [
    "AgentOptions",
    "AgentSession",
    "AssistantMessage",
    "AsyncHookOutput",
    "CLIConnectionError",
    "CLIJSONDecodeError",
    "CLINotFoundError",
    "CallbackRegistry",
    "ConfigError",
    "ConnectionState",
    "ControlProtocol",
    "ControlRequestError",
    "ControlTimeoutError",
    "DuplexError",
    "HookContext",
    "HookMatcher",
    "InMemoryTransport",
    "Message",
    "MessageParseError",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionUpdate",
    "ProcessError",
    "ResultMessage",
    "StreamEvent",
    "SubprocessTransport",
    "SyncHookOutput",
    "SystemMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolPermissionContext",
    "ToolResultBlock",
    "ToolUseBlock",
    "Transport",
    "UserMessage",
    "__version__",
    "load_options",
    "parse_message",
    "query",
]
