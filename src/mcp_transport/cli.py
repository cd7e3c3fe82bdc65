"""mcp-transport command-line probe.

Starts an MCP server over stdio, initializes a session, prints the server's
tools (or the result of one tool call) as JSON and shuts the server down.

Usage:
    mcp-transport [--env KEY=VALUE]... [--call TOOL [--arguments JSON]] -- COMMAND [ARGS...]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from .client import Client, get_stderr, new_stdio_client
from .config import get_config
from .errors import LaunchError, TransportError, WaitError
from .transport.stderr import StderrStream

__all__ = ["main", "run_probe"]

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 60.0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-transport",
        description="Start an MCP server over stdio and list its tools.",
    )
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment variable for the server (repeatable)",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for the server")
    parser.add_argument("--call", default=None, metavar="TOOL", help="Call a tool instead of listing")
    parser.add_argument(
        "--arguments",
        default="{}",
        metavar="JSON",
        help="Tool arguments as a JSON object (with --call)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_READ_TIMEOUT,
        help="Seconds to wait for each server response",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.add_argument("command", help="Server executable")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Server arguments")
    return parser


def _configure_logging(verbose: bool) -> None:
    """Log to a temp file in debug mode, otherwise to stderr."""
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if verbose else logging.INFO

    # Third-party loggers (mcp, anyio) stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("mcp_transport").setLevel(log_level)


async def _probe(client: Client, call: str | None, arguments: dict[str, Any]) -> dict[str, Any]:
    await client.start()
    init = await client.initialize()

    if call:
        result = await client.call_tool(call, arguments)
        return result.model_dump(mode="json", exclude_none=True)

    tools = await client.list_tools()
    return {
        "server": init.serverInfo.model_dump(mode="json", exclude_none=True),
        "tools": [
            {"name": tool.name, "description": tool.description}
            for tool in tools.tools
        ],
    }


async def run_probe(
    command: str,
    args: list[str],
    env: list[str],
    *,
    cwd: str | None = None,
    call: str | None = None,
    arguments: dict[str, Any] | None = None,
    read_timeout: float | None = DEFAULT_READ_TIMEOUT,
) -> int:
    """Run the probe and return the process exit code."""
    try:
        client = await new_stdio_client(command, env, *args, read_timeout=read_timeout, cwd=cwd)
    except LaunchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    exit_code = 0
    try:
        output = await _probe(client, call, arguments or {})
        print(json.dumps(output, ensure_ascii=False, indent=2))
    except Exception as e:
        exit_code = 1
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        stderr = get_stderr(client)
        if isinstance(stderr, StderrStream) and stderr.buffered:
            tail = stderr.tail().decode("utf-8", errors="replace")
            print(f"--- server stderr (tail) ---\n{tail}", file=sys.stderr)
    finally:
        try:
            await client.close()
        except WaitError as e:
            # Servers stopped by the escalation exit non-zero
            logger.warning(f"{e}")
        except TransportError as e:
            print(f"error: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def main(argv: list[str] | None = None) -> None:
    """Console entry point."""
    parser = _build_parser()
    ns = parser.parse_args(argv)

    server_args = list(ns.args)
    if server_args and server_args[0] == "--":
        server_args = server_args[1:]

    try:
        arguments = json.loads(ns.arguments)
    except json.JSONDecodeError as e:
        parser.error(f"--arguments is not valid JSON: {e}")
    if not isinstance(arguments, dict):
        parser.error("--arguments must be a JSON object")

    _configure_logging(ns.verbose)
    logger.debug(f"Starting probe: {get_config()}")

    sys.exit(
        asyncio.run(
            run_probe(
                ns.command,
                server_args,
                ns.env,
                cwd=ns.cwd,
                call=ns.call,
                arguments=arguments,
                read_timeout=ns.timeout,
            )
        )
    )


if __name__ == "__main__":
    main()
