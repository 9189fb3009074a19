"""Shared constants and type aliases for the duplex runtime."""

from __future__ import annotations

#: Maximum bytes buffered while assembling one JSON message (1 MB).
DEFAULT_MAX_BUFFER_SIZE = 1_048_576

#: Seconds to wait for the ``initialize`` handshake.
DEFAULT_INITIALIZE_TIMEOUT = 60.0

#: Seconds to wait for any other outbound control request.
DEFAULT_CONTROL_TIMEOUT = 60.0

#: Seconds to keep stdin open waiting for the first result when callbacks need it.
DEFAULT_STREAM_CLOSE_TIMEOUT = 60.0

#: Capacity of the consumer-facing output queue.
DEFAULT_QUEUE_SIZE = 100

#: Env var (milliseconds) overriding the stream close timeout.
ENV_STREAM_CLOSE_TIMEOUT = "DUPLEX_STREAM_CLOSE_TIMEOUT"

#: Env var (seconds) overriding the initialize timeout.
ENV_INITIALIZE_TIMEOUT = "DUPLEX_INITIALIZE_TIMEOUT"

#: Session id used when the host does not name a conversation thread.
DEFAULT_SESSION_ID = "default"

# Top-level ``type`` values of the control channel.
CONTROL_REQUEST = "control_request"
CONTROL_RESPONSE = "control_response"
CONTROL_CANCEL_REQUEST = "control_cancel_request"

#: Agent CLI flag naming the tool used for permission prompts.
PERMISSION_PROMPT_TOOL_FLAG = "--permission-prompt-tool"
