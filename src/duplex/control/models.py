"""Models for control-channel payloads: permissions and hooks.

Wire names on the control channel mix conventions: hook inputs arrive in
snake_case, while permission and hook *outputs* are expected in camelCase.
Output models therefore carry camelCase aliases and are serialized with
``by_alias=True``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Protocol, get_args

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

logger = logging.getLogger(__name__)

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]

HookEvent = Literal[
    "PreToolUse",
    "PostToolUse",
    "UserPromptSubmit",
    "Stop",
    "SubagentStop",
    "PreCompact",
]

PermissionBehavior = Literal["allow", "deny", "ask"]

PermissionUpdateDestination = Literal[
    "userSettings", "projectSettings", "localSettings", "session"
]


# ------------------------------------------------------------------ #
# Permission updates
# ------------------------------------------------------------------ #


class PermissionRuleValue(BaseModel):
    """A single permission rule."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tool_name: str = Field(alias="toolName")
    rule_content: str | None = Field(default=None, alias="ruleContent")


class PermissionUpdate(BaseModel):
    """A change to the agent's permission rules, suggested or applied."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal[
        "addRules",
        "replaceRules",
        "removeRules",
        "setMode",
        "addDirectories",
        "removeDirectories",
    ]
    rules: list[PermissionRuleValue] | None = None
    behavior: PermissionBehavior | None = None
    mode: PermissionMode | None = None
    directories: list[str] | None = None
    destination: PermissionUpdateDestination | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form; only fields relevant to ``type`` are kept."""
        result: dict[str, Any] = {"type": self.type}
        if self.destination is not None:
            result["destination"] = self.destination

        match self.type:
            case "addRules" | "replaceRules" | "removeRules":
                if self.rules is not None:
                    result["rules"] = [
                        {"toolName": r.tool_name, "ruleContent": r.rule_content}
                        for r in self.rules
                    ]
                if self.behavior is not None:
                    result["behavior"] = self.behavior
            case "setMode":
                if self.mode is not None:
                    result["mode"] = self.mode
            case "addDirectories" | "removeDirectories":
                if self.directories is not None:
                    result["directories"] = self.directories
        return result


def parse_permission_suggestions(raw: Any) -> list[PermissionUpdate]:
    """Parse the ``permission_suggestions`` array, dropping invalid entries."""
    if not isinstance(raw, list):
        return []
    suggestions: list[PermissionUpdate] = []
    for item in raw:
        try:
            suggestions.append(PermissionUpdate.model_validate(item))
        except ValidationError:
            logger.warning("Ignoring malformed permission suggestion: %r", item)
    return suggestions


# ------------------------------------------------------------------ #
# Permission callback
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ToolPermissionContext:
    """Extra information passed to the permission callback."""

    suggestions: list[PermissionUpdate] = field(default_factory=list)
    signal: None = None


@dataclass
class PermissionResultAllow:
    """Allow the tool call, optionally replacing its input."""

    updated_input: dict[str, Any] | None = None
    updated_permissions: list[PermissionUpdate] | None = None
    behavior: Literal["allow"] = field(default="allow", init=False)


@dataclass
class PermissionResultDeny:
    """Deny the tool call with a reason shown to the model."""

    message: str = ""
    interrupt: bool = False
    behavior: Literal["deny"] = field(default="deny", init=False)


PermissionResult = PermissionResultAllow | PermissionResultDeny


class PermissionCallback(Protocol):
    """Host function consulted before a tool runs."""

    async def __call__(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResult: ...


# ------------------------------------------------------------------ #
# Hook inputs
# ------------------------------------------------------------------ #


class _HookInputBase(BaseModel):
    """Fields present on every hook input; unknown extras are kept."""

    model_config = ConfigDict(frozen=True, extra="allow")

    session_id: str
    transcript_path: str
    cwd: str
    permission_mode: str | None = None


class PreToolUseHookInput(_HookInputBase):
    hook_event_name: Literal["PreToolUse"] = "PreToolUse"
    tool_name: str
    tool_input: dict[str, Any]


class PostToolUseHookInput(_HookInputBase):
    hook_event_name: Literal["PostToolUse"] = "PostToolUse"
    tool_name: str
    tool_input: dict[str, Any]
    tool_response: Any = None


class UserPromptSubmitHookInput(_HookInputBase):
    hook_event_name: Literal["UserPromptSubmit"] = "UserPromptSubmit"
    prompt: str


class StopHookInput(_HookInputBase):
    hook_event_name: Literal["Stop"] = "Stop"
    stop_hook_active: bool


class SubagentStopHookInput(_HookInputBase):
    hook_event_name: Literal["SubagentStop"] = "SubagentStop"
    stop_hook_active: bool


class PreCompactHookInput(_HookInputBase):
    hook_event_name: Literal["PreCompact"] = "PreCompact"
    trigger: Literal["manual", "auto"]
    custom_instructions: str | None = None


def _hook_event_discriminator(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("hook_event_name", ""))
    return str(getattr(v, "hook_event_name", ""))


HookInput = Annotated[
    Annotated[PreToolUseHookInput, Tag("PreToolUse")]
    | Annotated[PostToolUseHookInput, Tag("PostToolUse")]
    | Annotated[UserPromptSubmitHookInput, Tag("UserPromptSubmit")]
    | Annotated[StopHookInput, Tag("Stop")]
    | Annotated[SubagentStopHookInput, Tag("SubagentStop")]
    | Annotated[PreCompactHookInput, Tag("PreCompact")],
    Discriminator(_hook_event_discriminator),
]
"""Discriminated union of all hook inputs, keyed by ``hook_event_name``."""

_HOOK_INPUT_ADAPTER: TypeAdapter[HookInput] = TypeAdapter(HookInput)

_HOOK_EVENTS = frozenset(get_args(HookEvent))


def parse_hook_input(raw: Any) -> HookInput:
    """Validate a raw hook input into its typed variant.

    Raises:
        ValueError: If *raw* is not a mapping or names an unknown event.
        pydantic.ValidationError: If a required field is missing.
    """
    if not isinstance(raw, dict):
        msg = "Hook input is not a valid dictionary"
        raise ValueError(msg)
    event_name = raw.get("hook_event_name")
    if event_name not in _HOOK_EVENTS:
        msg = f"Unknown hook event name: {event_name}"
        raise ValueError(msg)
    return _HOOK_INPUT_ADAPTER.validate_python(raw)


# ------------------------------------------------------------------ #
# Hook outputs
# ------------------------------------------------------------------ #


class _HookOutputBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class PreToolUseHookSpecificOutput(_HookOutputBase):
    """PreToolUse decision: allow, deny or ask, with an optional reason."""

    hook_event_name: Literal["PreToolUse"] = Field(
        default="PreToolUse", alias="hookEventName"
    )
    permission_decision: PermissionBehavior | None = Field(
        default=None, alias="permissionDecision"
    )
    permission_decision_reason: str | None = Field(
        default=None, alias="permissionDecisionReason"
    )
    updated_input: dict[str, Any] | None = Field(default=None, alias="updatedInput")


class PostToolUseHookSpecificOutput(_HookOutputBase):
    hook_event_name: Literal["PostToolUse"] = Field(
        default="PostToolUse", alias="hookEventName"
    )
    additional_context: str | None = Field(default=None, alias="additionalContext")


class UserPromptSubmitHookSpecificOutput(_HookOutputBase):
    hook_event_name: Literal["UserPromptSubmit"] = Field(
        default="UserPromptSubmit", alias="hookEventName"
    )
    additional_context: str | None = Field(default=None, alias="additionalContext")


class SessionStartHookSpecificOutput(_HookOutputBase):
    hook_event_name: Literal["SessionStart"] = Field(
        default="SessionStart", alias="hookEventName"
    )
    additional_context: str | None = Field(default=None, alias="additionalContext")


def _hook_specific_discriminator(v: Any) -> str | None:
    if isinstance(v, dict):
        tag = v.get("hookEventName", v.get("hook_event_name"))
        return str(tag) if tag is not None else None
    return getattr(v, "hook_event_name", None)


HookSpecificOutput = Annotated[
    Annotated[PreToolUseHookSpecificOutput, Tag("PreToolUse")]
    | Annotated[PostToolUseHookSpecificOutput, Tag("PostToolUse")]
    | Annotated[UserPromptSubmitHookSpecificOutput, Tag("UserPromptSubmit")]
    | Annotated[SessionStartHookSpecificOutput, Tag("SessionStart")],
    Discriminator(_hook_specific_discriminator),
]
"""Event-specific hook output, keyed by ``hookEventName``."""


class SyncHookOutput(_HookOutputBase):
    """Synchronous hook result with control and decision fields.

    ``continue_`` is sent as ``continue`` (a Python keyword).
    """

    continue_: bool | None = Field(default=None, alias="continue")
    suppress_output: bool | None = Field(default=None, alias="suppressOutput")
    stop_reason: str | None = Field(default=None, alias="stopReason")
    decision: Literal["block"] | None = None
    system_message: str | None = Field(default=None, alias="systemMessage")
    reason: str | None = None
    hook_specific_output: HookSpecificOutput | None = Field(
        default=None, alias="hookSpecificOutput"
    )


class AsyncHookOutput(_HookOutputBase):
    """Defer the hook; ``async_`` is sent as ``async``."""

    async_: Literal[True] = Field(default=True, alias="async")
    async_timeout: int | None = Field(default=None, alias="asyncTimeout")


HookOutput = SyncHookOutput | AsyncHookOutput

_ASYNC_KEYS = frozenset({"async", "async_"})


def hook_output_to_wire(output: HookOutput | dict[str, Any] | None) -> dict[str, Any]:
    """Serialize a hook callback's return value for the control response.

    A dict is validated as ``AsyncHookOutput`` when it carries an ``async``
    (or ``async_``) key and as ``SyncHookOutput`` otherwise.  Keys may use
    either the Python field names or the wire names, at any depth.

    Raises:
        TypeError: If *output* is not a hook output model, dict or None.
        pydantic.ValidationError: If a dict does not fit the output model.
    """
    if output is None:
        return {}
    if isinstance(output, dict):
        model = (
            AsyncHookOutput if _ASYNC_KEYS.intersection(output) else SyncHookOutput
        )
        output = model.model_validate(output)
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json", by_alias=True, exclude_none=True)
    msg = (
        "Hook callback must return SyncHookOutput, AsyncHookOutput or dict, "
        f"got {type(output).__name__}"
    )
    raise TypeError(msg)


@dataclass(frozen=True)
class HookContext:
    """Context passed to hook callbacks.  ``signal`` is reserved."""

    signal: None = None


class HookCallback(Protocol):
    """Host function invoked by the agent at a lifecycle event."""

    async def __call__(
        self,
        hook_input: HookInput,
        tool_use_id: str | None,
        context: HookContext,
    ) -> HookOutput | dict[str, Any]: ...
