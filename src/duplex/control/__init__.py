"""Control channel: permission and hook payloads, the registry and the engine."""

from duplex.control.engine import ConnectionState, ControlProtocol
from duplex.control.models import (
    AsyncHookOutput,
    HookContext,
    HookEvent,
    HookInput,
    PermissionMode,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    PostToolUseHookInput,
    PostToolUseHookSpecificOutput,
    PreCompactHookInput,
    PreToolUseHookInput,
    PreToolUseHookSpecificOutput,
    SessionStartHookSpecificOutput,
    StopHookInput,
    SubagentStopHookInput,
    SyncHookOutput,
    ToolPermissionContext,
    UserPromptSubmitHookInput,
    UserPromptSubmitHookSpecificOutput,
)
from duplex.control.registry import CallbackRegistry

__all__ = [
    "AsyncHookOutput",
    "CallbackRegistry",
    "ConnectionState",
    "ControlProtocol",
    "HookContext",
    "HookEvent",
    "HookInput",
    "PermissionMode",
    "PermissionResult",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionRuleValue",
    "PermissionUpdate",
    "PostToolUseHookInput",
    "PostToolUseHookSpecificOutput",
    "PreCompactHookInput",
    "PreToolUseHookInput",
    "PreToolUseHookSpecificOutput",
    "SessionStartHookSpecificOutput",
    "StopHookInput",
    "SubagentStopHookInput",
    "SyncHookOutput",
    "ToolPermissionContext",
    "UserPromptSubmitHookInput",
    "UserPromptSubmitHookSpecificOutput",
]
