"""duplex command line: run one agent turn from the terminal."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import click

from duplex import __version__
from duplex.config.models import AgentOptions
from duplex.config.parser import ConfigError, load_options, load_options_file
from duplex.errors import DuplexError
from duplex.messages import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock
from duplex.query import query

_PERMISSION_MODES = ("default", "acceptEdits", "plan", "bypassPermissions")


@click.group()
@click.version_option(version=__version__, prog_name="duplex")
def cli() -> None:
    """duplex: drive an agent process over its JSON control protocol."""


@cli.command()
@click.argument("prompt")
@click.option(
    "-f", "--file", "options_file", type=click.Path(), help="YAML options file."
)
@click.option(
    "--command",
    "command",
    type=str,
    default=None,
    help="Agent command line, e.g. 'claude --output-format stream-json ...'.",
)
@click.option(
    "--permission-mode",
    type=click.Choice(_PERMISSION_MODES),
    default=None,
    help="Permission mode applied after the handshake.",
)
@click.option("--model", type=str, default=None, help="Model to switch to.")
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds to wait for the handshake and each control response.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def ask(
    prompt: str,
    options_file: str | None,
    command: str | None,
    permission_mode: str | None,
    model: str | None,
    timeout: float | None,
    verbose: bool,
) -> None:
    """Send PROMPT to the agent and print its reply."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if command is not None:
        overrides["command"] = command
    if permission_mode is not None:
        overrides["permission_mode"] = permission_mode
    if model is not None:
        overrides["model"] = model
    if timeout is not None:
        overrides["initialize_timeout"] = timeout
        overrides["control_timeout"] = timeout

    try:
        if options_file:
            options = load_options_file(Path(options_file), **overrides)
        else:
            options = load_options(**overrides)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if not options.command:
        click.echo(
            "Error: no agent command given (use --command or an options file)",
            err=True,
        )
        raise SystemExit(1)

    try:
        failed = asyncio.run(_run_ask(prompt, options, verbose))
    except DuplexError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    if failed:
        raise SystemExit(1)


async def _run_ask(prompt: str, options: AgentOptions, verbose: bool) -> bool:
    """Print one turn; return whether the agent reported an error."""
    failed = False
    async for message in query(prompt, options=options):
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    click.echo(block.text)
                elif isinstance(block, ToolUseBlock) and verbose:
                    click.echo(f"[tool] {block.name}", err=True)
        elif isinstance(message, ResultMessage):
            failed = message.is_error
            click.echo(_format_result(message), err=True)
    return failed


def _format_result(result: ResultMessage) -> str:
    parts = [
        f"[{result.subtype}]",
        f"turns={result.num_turns}",
        f"duration={result.duration_ms}ms",
    ]
    if result.total_cost_usd is not None:
        parts.append(f"cost=${result.total_cost_usd:.4f}")
    return " ".join(parts)
