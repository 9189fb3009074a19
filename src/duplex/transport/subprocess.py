"""Subprocess transport: an agent CLI process speaking JSONL over stdio."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from duplex.constants import DEFAULT_MAX_BUFFER_SIZE
from duplex.errors import (
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ProcessError,
)

logger = logging.getLogger(__name__)

#: Seconds to wait for the process to exit after stdin is closed.
_SHUTDOWN_WAIT = 5.0

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Seconds to let the stderr reader drain after stdout hits EOF.
_STDERR_DRAIN_WAIT = 1.0

#: Number of stderr lines kept for error reports.
_STDERR_TAIL_LINES = 100


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


class SubprocessTransport:
    """Transport that owns an agent CLI child process.

    The process is started in its own session so signals aimed at the host
    do not reach it.  stdout is read line by line (one JSON value per line);
    stderr is drained in the background into a bounded tail and, if given,
    the ``stderr`` callback.

    Malformed or oversized stdout lines are fatal: ``read_messages`` raises
    ``CLIJSONDecodeError`` and the stream ends.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        stderr: Callable[[str], None] | None = None,
    ) -> None:
        if not command:
            msg = "SubprocessTransport requires a non-empty command"
            raise ValueError(msg)
        self._command = list(command)
        self._cwd = Path(cwd) if cwd is not None else None
        self._env = dict(env or {})
        self._max_buffer_size = max_buffer_size
        self._stderr_callback = stderr

        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._write_lock = asyncio.Lock()
        self._ready = False
        self._input_ended = False
        self._closed = False

    @property
    def pid(self) -> int | None:
        """PID of the running child process, if any."""
        if self._process is not None and self._process.returncode is None:
            return self._process.pid
        return None

    @property
    def stderr_output(self) -> str:
        """The most recent stderr lines, newline-joined."""
        return "\n".join(self._stderr_tail)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Spawn the child process and start draining its stderr."""
        if self._closed:
            msg = "Transport is closed"
            raise CLIConnectionError(msg)
        if self._process is not None:
            return

        if self._cwd is not None and not self._cwd.is_dir():
            msg = f"Working directory does not exist: {self._cwd}"
            raise CLIConnectionError(msg)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env={**os.environ, **self._env},
                limit=self._max_buffer_size,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise CLINotFoundError(cli_path=self._command[0]) from exc
        except OSError as exc:
            msg = f"Failed to start agent process: {exc}"
            raise CLIConnectionError(msg) from exc

        logger.info(
            "Started agent process %s (pid %d)", self._command[0], self._process.pid
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._ready = True

    async def close(self) -> None:
        """Graceful shutdown: close stdin -> wait -> SIGTERM -> SIGKILL."""
        if self._closed:
            return
        await self.end_input()
        self._closed = True
        self._ready = False

        proc = self._process
        if proc is not None and proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=_SHUTDOWN_WAIT)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
                except TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task

    def is_ready(self) -> bool:
        return self._ready and not self._closed

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #

    async def write(self, data: str) -> None:
        async with self._write_lock:
            proc = self._process
            if (
                not self.is_ready()
                or self._input_ended
                or proc is None
                or proc.stdin is None
            ):
                msg = "Transport is not ready for writing"
                raise CLIConnectionError(msg)
            if proc.returncode is not None:
                msg = (
                    "Cannot write to terminated process "
                    f"(exit code: {proc.returncode})"
                )
                raise CLIConnectionError(msg)
            try:
                proc.stdin.write(data.encode())
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                self._ready = False
                msg = f"Failed to write to process stdin: {exc}"
                raise CLIConnectionError(msg) from exc

    async def end_input(self) -> None:
        async with self._write_lock:
            if self._input_ended:
                return
            self._input_ended = True
            proc = self._process
            if proc is None or proc.stdin is None:
                return
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                proc.stdin.close()
                await proc.stdin.wait_closed()

    # ------------------------------------------------------------------ #
    # Reading
    # ------------------------------------------------------------------ #

    async def read_messages(self) -> AsyncIterator[Any]:
        proc = self._process
        if proc is None or proc.stdout is None:
            msg = "Not connected"
            raise CLIConnectionError(msg)

        while True:
            try:
                line_bytes = await proc.stdout.readline()
            except ValueError as exc:
                # Line exceeded the StreamReader limit.
                raise CLIJSONDecodeError(
                    "JSON message exceeded maximum buffer size of "
                    f"{self._max_buffer_size} bytes",
                    exc,
                ) from exc

            if not line_bytes:
                break

            if len(line_bytes) > self._max_buffer_size:
                msg = (
                    f"Buffer size {len(line_bytes)} exceeds limit "
                    f"{self._max_buffer_size}"
                )
                raise CLIJSONDecodeError(
                    "JSON message exceeded maximum buffer size of "
                    f"{self._max_buffer_size} bytes",
                    ValueError(msg),
                )

            line_str = line_bytes.decode(errors="replace").strip()
            if not line_str:
                continue

            try:
                data = json.loads(line_str)
            except json.JSONDecodeError as exc:
                logger.warning("Malformed JSON from agent stdout: %s", line_str[:200])
                raise CLIJSONDecodeError(line_str, exc) from exc

            yield data

        await self._check_exit(proc)

    async def _check_exit(self, proc: asyncio.subprocess.Process) -> None:
        """Raise ``ProcessError`` if the process ended with a non-zero code."""
        returncode = await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            with contextlib.suppress(TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(
                    asyncio.shield(self._stderr_task), timeout=_STDERR_DRAIN_WAIT
                )
        self._ready = False

        if returncode == 0 or self._closed:
            logger.debug("Agent process exited with code %d", returncode)
            return

        stderr_text = self.stderr_output
        logger.error(
            "Agent process exited with code %d:\n  %s",
            returncode,
            format_stderr_preview(stderr_text),
        )
        raise ProcessError(
            "Agent process failed",
            exit_code=returncode,
            stderr=stderr_text or None,
        )

    async def _drain_stderr(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line_bytes = await proc.stderr.readline()
            except ValueError:
                logger.warning("stderr line exceeded buffer limit, skipping")
                continue
            if not line_bytes:
                break
            line = line_bytes.decode(errors="replace").rstrip()
            if not line:
                continue
            self._stderr_tail.append(line)
            if self._stderr_callback is not None:
                try:
                    self._stderr_callback(line)
                except Exception:
                    logger.warning("stderr callback raised", exc_info=True)
