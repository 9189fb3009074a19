"""Tests for duplex options models and loader."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from duplex.config.models import AgentOptions, HookMatcher
from duplex.config.parser import ConfigError, load_options, load_options_file
from duplex.constants import (
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_MAX_BUFFER_SIZE,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_STREAM_CLOSE_TIMEOUT,
    ENV_INITIALIZE_TIMEOUT,
    ENV_STREAM_CLOSE_TIMEOUT,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _minimal_raw(**overrides: Any) -> dict[str, Any]:
    """Return a small valid options dict, with optional overrides."""
    base: dict[str, Any] = {"command": ["agent", "--output-format", "stream-json"]}
    base.update(overrides)
    return base


def _write_yaml(path: Path, data: Any) -> Path:
    """Write *data* as YAML and return the file path."""
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


async def _allow(tool_name: str, tool_input: dict, context: Any) -> Any:
    return None


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_STREAM_CLOSE_TIMEOUT, raising=False)
    monkeypatch.delenv(ENV_INITIALIZE_TIMEOUT, raising=False)


# ===================================================================
# Model validation tests
# ===================================================================


class TestAgentOptions:
    def test_defaults_applied(self) -> None:
        opts = AgentOptions()
        assert opts.command == []
        assert opts.cwd is None
        assert opts.permission_mode is None
        assert opts.hooks == {}
        assert opts.control_timeout == DEFAULT_CONTROL_TIMEOUT
        assert opts.stream_close_timeout == DEFAULT_STREAM_CLOSE_TIMEOUT
        assert opts.max_buffer_size == DEFAULT_MAX_BUFFER_SIZE
        assert opts.max_queue == DEFAULT_QUEUE_SIZE

    def test_command_string_is_split(self) -> None:
        opts = AgentOptions(command="agent --system-prompt 'be brief'")
        assert opts.command == ["agent", "--system-prompt", "be brief"]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AgentOptions.model_validate(_minimal_raw(colour="blue"))

    def test_invalid_permission_mode(self) -> None:
        with pytest.raises(ValidationError):
            AgentOptions(permission_mode="yolo")

    @pytest.mark.parametrize("field", ["initialize_timeout", "control_timeout"])
    def test_timeouts_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            AgentOptions.model_validate({field: 0})

    def test_can_use_tool_conflicts_with_prompt_tool(self) -> None:
        with pytest.raises(ValidationError, match="use one or the other"):
            AgentOptions(can_use_tool=_allow, permission_prompt_tool_name="mcp__perm")

    def test_hooks_keyed_by_event(self) -> None:
        opts = AgentOptions(
            hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[_allow])]}
        )
        assert opts.hooks["PreToolUse"][0].matcher == "Bash"

    def test_unknown_hook_event_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AgentOptions.model_validate({"hooks": {"OnBoot": []}})


# ===================================================================
# Loader tests
# ===================================================================


class TestLoadOptions:
    def test_raw_mapping(self) -> None:
        opts = load_options(_minimal_raw(model="claude-sonnet"))
        assert opts.command[0] == "agent"
        assert opts.model == "claude-sonnet"

    def test_overrides_win_over_raw(self) -> None:
        opts = load_options(_minimal_raw(model="a"), model="b")
        assert opts.model == "b"

    def test_stream_close_env_is_milliseconds(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(ENV_STREAM_CLOSE_TIMEOUT, "2500")
        opts = load_options(_minimal_raw(stream_close_timeout=10))
        assert opts.stream_close_timeout == 2.5

    def test_initialize_env_is_seconds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_INITIALIZE_TIMEOUT, "90")
        opts = load_options(_minimal_raw())
        assert opts.initialize_timeout == 90.0

    def test_overrides_win_over_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_INITIALIZE_TIMEOUT, "90")
        opts = load_options(_minimal_raw(), initialize_timeout=5)
        assert opts.initialize_timeout == 5

    def test_blank_env_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_STREAM_CLOSE_TIMEOUT, "  ")
        opts = load_options(_minimal_raw())
        assert opts.stream_close_timeout == DEFAULT_STREAM_CLOSE_TIMEOUT

    def test_bad_env_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_STREAM_CLOSE_TIMEOUT, "soon")
        with pytest.raises(ConfigError, match="expected a number"):
            load_options(_minimal_raw())

    def test_validation_error_is_readable(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_options(_minimal_raw(control_timeout="never"))
        text = str(exc_info.value)
        assert text.startswith("Options validation failed:")
        assert "control_timeout" in text

    def test_model_level_error_located_at_options(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_options(can_use_tool=_allow, permission_prompt_tool_name="x")
        assert "  options: " in str(exc_info.value)

    def test_nested_location_joined(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_options({"hooks": {"PreToolUse": [{"timeout": -1}]}})
        assert "hooks → PreToolUse → 0 → timeout" in str(exc_info.value)


class TestLoadOptionsFile:
    def test_loads_yaml(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path / "duplex.yaml",
            _minimal_raw(permission_mode="plan", env={"AGENT_LOG": "debug"}),
        )
        opts = load_options_file(path)
        assert opts.permission_mode == "plan"
        assert opts.env == {"AGENT_LOG": "debug"}

    def test_overrides_applied(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "duplex.yaml", _minimal_raw(model="a"))
        assert load_options_file(path, model="b").model == "b"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Options file not found"):
            load_options_file(tmp_path / "nope.yaml")

    def test_invalid_yaml_reports_position(self, tmp_path: Path) -> None:
        path = tmp_path / "duplex.yaml"
        path.write_text("command: [agent\nmodel: x\n", encoding="utf-8")
        with pytest.raises(ConfigError, match=r"Invalid YAML in duplex\.yaml \(line"):
            load_options_file(path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "duplex.yaml", ["agent"])
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_options_file(path)

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "duplex.yaml"
        path.write_text("", encoding="utf-8")
        assert load_options_file(path).command == []

    def test_dotenv_loaded(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # Registered so teardown removes what load_dotenv sets.
        monkeypatch.setenv(ENV_STREAM_CLOSE_TIMEOUT, "0")
        monkeypatch.delenv(ENV_STREAM_CLOSE_TIMEOUT)

        (tmp_path / ".env").write_text(
            f"{ENV_STREAM_CLOSE_TIMEOUT}=1500\n", encoding="utf-8"
        )
        path = _write_yaml(tmp_path / "duplex.yaml", _minimal_raw())

        assert load_options_file(path).stream_close_timeout == 1.5
