"""Pydantic v2 models for session options."""

from __future__ import annotations

import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from duplex.constants import (
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_INITIALIZE_TIMEOUT,
    DEFAULT_MAX_BUFFER_SIZE,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_STREAM_CLOSE_TIMEOUT,
)
from duplex.control.models import HookEvent, PermissionMode


class HookMatcher(BaseModel):
    """Hook callbacks for one event, filtered by a tool-name matcher."""

    model_config = ConfigDict(extra="forbid")

    matcher: str | None = Field(
        default=None,
        description="Tool name pattern, e.g. 'Bash' or 'Write|Edit' (None matches all)",
    )
    hooks: list[Callable[..., Any]] = Field(
        default_factory=list,
        description="Callbacks invoked as (hook_input, tool_use_id, context)",
    )
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds the agent waits for these hooks",
    )


class AgentOptions(BaseModel):
    """Options for one agent session."""

    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(
        default_factory=list,
        description="argv of the agent process, used when no transport is injected",
    )
    cwd: Path | None = Field(
        default=None,
        description="Working directory of the agent process",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the agent process",
    )
    permission_mode: PermissionMode | None = Field(
        default=None,
        description="Permission mode applied right after the handshake",
    )
    model: str | None = Field(
        default=None,
        description="Model applied right after the handshake",
    )
    permission_prompt_tool_name: str | None = Field(
        default=None,
        description=(
            "Tool the agent uses for permission prompts, passed as "
            "--permission-prompt-tool ('stdio' with can_use_tool)"
        ),
    )
    can_use_tool: Callable[..., Any] | None = Field(
        default=None,
        description="Permission callback invoked as (tool_name, tool_input, context)",
    )
    hooks: dict[HookEvent, list[HookMatcher]] = Field(
        default_factory=dict,
        description="Hook matchers keyed by event name",
    )
    stderr: Callable[..., Any] | None = Field(
        default=None,
        description="Called with each stderr line of the agent process",
    )
    initialize_timeout: float = Field(
        default=DEFAULT_INITIALIZE_TIMEOUT,
        gt=0,
        description="Seconds to wait for the initialize handshake",
    )
    control_timeout: float = Field(
        default=DEFAULT_CONTROL_TIMEOUT,
        gt=0,
        description="Seconds to wait for other control responses",
    )
    stream_close_timeout: float = Field(
        default=DEFAULT_STREAM_CLOSE_TIMEOUT,
        gt=0,
        description="Seconds to keep input open for callbacks after streaming",
    )
    max_buffer_size: int = Field(
        default=DEFAULT_MAX_BUFFER_SIZE,
        gt=0,
        description="Maximum bytes of one JSON line from the agent",
    )
    max_queue: int = Field(
        default=DEFAULT_QUEUE_SIZE,
        gt=0,
        description="Capacity of the output message queue",
    )

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: object) -> object:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @model_validator(mode="after")
    def _validate_permission_tool(self) -> AgentOptions:
        if self.can_use_tool is not None and self.permission_prompt_tool_name:
            msg = (
                "can_use_tool callback cannot be used with "
                "permission_prompt_tool_name; use one or the other"
            )
            raise ValueError(msg)
        return self
