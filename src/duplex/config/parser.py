"""Build and validate AgentOptions from mappings, YAML files and the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from duplex.config.models import AgentOptions
from duplex.constants import ENV_INITIALIZE_TIMEOUT, ENV_STREAM_CLOSE_TIMEOUT
from duplex.errors import DuplexError


class ConfigError(DuplexError):
    """User-facing configuration error."""


def load_options(raw: Mapping[str, Any] | None = None, **overrides: Any) -> AgentOptions:
    """Validate session options.

    Precedence, lowest first: *raw*, environment variables, *overrides*.
    ``DUPLEX_STREAM_CLOSE_TIMEOUT`` is read in milliseconds and
    ``DUPLEX_INITIALIZE_TIMEOUT`` in seconds.

    Raises:
        ConfigError: On an unparseable environment value or validation failure.
    """
    data: dict[str, Any] = dict(raw or {})
    _apply_env_overrides(data)
    data.update(overrides)
    return _validate(data)


def load_options_file(path: Path | str, **overrides: Any) -> AgentOptions:
    """Load options from a YAML file.

    A ``.env`` file next to it, if present, is loaded into the process
    environment first, so it can carry the ``DUPLEX_*`` overrides.

    Raises:
        ConfigError: On missing file, bad YAML, or validation failure.
    """
    options_path = Path(path)
    if not options_path.is_file():
        msg = f"Options file not found: {options_path}"
        raise ConfigError(msg)
    raw = _read_yaml(options_path)
    _load_env(options_path.parent)
    return load_options(raw, **overrides)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read options file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)
    return data


def _load_env(options_dir: Path) -> None:
    env_path = options_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_overrides(data: dict[str, Any]) -> None:
    stream_close_ms = _env_number(ENV_STREAM_CLOSE_TIMEOUT)
    if stream_close_ms is not None:
        data["stream_close_timeout"] = stream_close_ms / 1000.0
    initialize_s = _env_number(ENV_INITIALIZE_TIMEOUT)
    if initialize_s is not None:
        data["initialize_timeout"] = initialize_s


def _env_number(name: str) -> float | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError as exc:
        msg = f"Invalid value for {name}: {value!r} (expected a number)"
        raise ConfigError(msg) from exc


def _validate(raw: dict[str, Any]) -> AgentOptions:
    try:
        return AgentOptions.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"]) or "options"
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Options validation failed:\n{joined}"
        raise ConfigError(msg) from exc
