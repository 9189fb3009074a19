"""Exception taxonomy for the duplex runtime."""

from __future__ import annotations

from typing import Any


class DuplexError(Exception):
    """Base class for every error raised by duplex."""


class CLIConnectionError(DuplexError):
    """The transport is unreachable, not ready, or already closed."""


class CLINotFoundError(CLIConnectionError):
    """The agent executable could not be found."""

    def __init__(
        self, message: str = "Agent CLI not found", cli_path: str | None = None
    ) -> None:
        self.cli_path = cli_path
        if cli_path is not None:
            message = f"{message}: {cli_path}"
        super().__init__(message)


class ProcessError(DuplexError):
    """The agent process failed.

    The message includes the exit code and, when captured, the tail of the
    process's stderr.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"
        super().__init__(message)


class CLIJSONDecodeError(DuplexError):
    """Output from the agent could not be decoded as JSON."""

    def __init__(self, line: str, original_error: Exception) -> None:
        self.line = line
        self.original_error = original_error
        preview = line[:100] + "..." if len(line) > 100 else line
        super().__init__(f"Failed to decode JSON: {preview}")


class MessageParseError(DuplexError):
    """A decoded object is not a well-formed output message.

    ``data`` holds the offending raw value exactly as received.
    """

    def __init__(self, message: str, data: Any = None) -> None:
        self.data = data
        super().__init__(message)


class ControlRequestError(DuplexError):
    """The remote side answered a control request with an error."""


class ControlTimeoutError(DuplexError, TimeoutError):
    """An outbound control request received no response in time."""
