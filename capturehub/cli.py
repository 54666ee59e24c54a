#!/usr/bin/env python3
"""
CaptureHub CLI - Command Line Interface

Drive remote capture agents from a terminal.

Usage:
    capturehub agents
    capturehub status http://10.0.0.2:5000
    capturehub start http://10.0.0.2:5000 -i eth0 ip:src:10.0.0.5 and port:dst:80
    capturehub compile tcp or udp
    capturehub ports
    capturehub presets save global web -f "tcp port 80"
"""

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from capturehub.agents.client import AgentClient
from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.directory import DirectoryClient
from capturehub.agents.models import Agent, AgentError, CommandOutcome
from capturehub.config import settings
from capturehub.filters.compiler import compile_filter
from capturehub.filters.models import (
    COMMON_PORTS,
    FilterExpression,
    FilterKind,
    FilterRule,
    FilterSpec,
    FilterValidationError,
    LogicalOperator,
)
from capturehub.filters.presets import FilterPresetStore, JsonFileStore
from capturehub.log import configure_logging
from capturehub.output.console import CaptureHubConsole, get_console


# =============================================================================
# Filter Arguments
# =============================================================================


def parse_rule(token: str) -> FilterRule:
    """
    Parse one rule token.

    Accepted forms: ``ip:src:10.0.0.5``, ``port:dst:80``,
    ``mac:src:aa:bb:cc:dd:ee:ff``, ``protocol:tcp`` and bare ``tcp``.
    """
    kind, _, rest = token.partition(":")
    if not rest:
        return FilterRule.create(FilterKind.PROTOCOL, kind)
    if kind.lower() == FilterKind.PROTOCOL.value:
        return FilterRule.create(FilterKind.PROTOCOL, rest)

    # MAC values contain colons, so split only once more
    sub_kind, _, value = rest.partition(":")
    return FilterRule.create(kind, sub_kind, value)


def parse_expression(tokens: list[str]) -> FilterExpression:
    """
    Parse rule tokens separated by optional ``and``/``or`` words.

    Adjacent rules without an operator between them are joined with ``and``.
    """
    expression = FilterExpression()
    operator = LogicalOperator.AND
    pending_operator = False

    for token in tokens:
        word = token.lower()
        if word in (LogicalOperator.AND.value, LogicalOperator.OR.value):
            if expression.is_empty or pending_operator:
                raise FilterValidationError(f"Unexpected operator: {token}")
            operator = LogicalOperator(word)
            pending_operator = True
            continue

        expression.add(parse_rule(token), operator)
        operator = LogicalOperator.AND
        pending_operator = False

    if pending_operator:
        raise FilterValidationError("Filter ends with an operator")
    return expression


def filter_from_args(args: argparse.Namespace) -> FilterSpec | None:
    """Raw ``--filter`` BPF, or an expression built from rule tokens."""
    if args.filter is not None:
        return args.filter
    if args.rules:
        return parse_expression(args.rules)
    return None


# =============================================================================
# Helpers
# =============================================================================


@asynccontextmanager
async def agent_session(url: str) -> AsyncIterator[CaptureSessionCoordinator]:
    """Coordinator for an agent addressed directly by URL."""
    url = url.rstrip("/")
    coordinator = CaptureSessionCoordinator(
        Agent(id=url, name=url, url=url),
        client=AgentClient(url),
    )
    try:
        yield coordinator
    finally:
        await coordinator.close()


def report(outcome: CommandOutcome, console: CaptureHubConsole, message: str) -> int:
    if outcome.success:
        console.print_success(message)
        return 0
    console.print_error(outcome.error)
    return 1


def describe_error(error: AgentError) -> str:
    """Operator-facing text for a failed call."""
    if error.is_application_error:
        return error.message
    return f"{settings.agent_unreachable_message} ({error.message})"


# =============================================================================
# Commands
# =============================================================================


async def cmd_agents(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    result = await DirectoryClient(args.directory).list_agents()
    if isinstance(result, AgentError):
        console.print_error(f"Failed to load agents: {describe_error(result)}")
        return 1

    console.print_agent_table(result)
    return 0


async def cmd_status(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    async with agent_session(args.url) as coordinator:
        result = await coordinator.refresh()
        if isinstance(result, AgentError):
            console.print_error(describe_error(result))
            health = await coordinator.client.health()
            if not isinstance(health, AgentError):
                console.print_warning("Agent passes its health check; only the status request failed")
            return 1
        console.print_agent_status(coordinator.agent)
    return 0


async def cmd_start(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    spec = filter_from_args(args)

    async with agent_session(args.url) as coordinator:
        # Learn whether a capture is already running
        await coordinator.refresh()
        outcome = await coordinator.start_capture(args.interface, spec)
        code = report(outcome, console, f"Capture started on {coordinator.agent.interface}")
        if outcome.success:
            console.print_bpf(compile_filter(spec))
    return code


async def cmd_stop(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    async with agent_session(args.url) as coordinator:
        outcome = await coordinator.stop_capture()
    return report(outcome, console, "Capture stopped")


async def cmd_interface(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    async with agent_session(args.url) as coordinator:
        outcome = await coordinator.set_interface(args.name)
    return report(outcome, console, f"Interface set to {args.name}")


def cmd_compile(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    console.print_bpf(compile_filter(parse_expression(args.rules)))
    return 0


def cmd_ports(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    console.print_ports_table(COMMON_PORTS)
    return 0


def cmd_presets(args: argparse.Namespace, console: CaptureHubConsole) -> int:
    store = FilterPresetStore(JsonFileStore(args.presets_file))

    if args.action == "list":
        console.print_preset_table(args.scope, store.list(args.scope))
        return 0

    if args.action == "save":
        spec = filter_from_args(args)
        if spec is None:
            console.print_error("A filter is required: use -f BPF or rule tokens")
            return 2
        preset_id = store.save(args.scope, args.name, spec, preset_id=args.id)
        console.print_success(f"Saved preset {args.name!r} ({preset_id})")
        return 0

    if store.delete(args.scope, args.id):
        console.print_success(f"Deleted preset {args.id}")
        return 0
    console.print_error(f"No preset {args.id} in {args.scope}")
    return 1


# =============================================================================
# Argument Parser
# =============================================================================


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-f", "--filter",
        help="Raw BPF filter, sent exactly as given",
    )
    parser.add_argument(
        "rules",
        nargs="*",
        help="Filter rules, e.g. ip:src:10.0.0.5 and port:dst:80",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capturehub",
        description="CaptureHub - Remote Packet Capture Coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Rule tokens:
    ip:src:10.0.0.5     port:dst:80     mac:src:aa:bb:cc:dd:ee:ff
    tcp                 protocol:udp
Join rules with "and" / "or" (default "and"), evaluated left to right.
""",
    )
    parser.add_argument(
        "--directory",
        default=settings.directory_url,
        help=f"Central server URL (default: {settings.directory_url})",
    )
    parser.add_argument(
        "--presets-file",
        type=Path,
        default=settings.presets_path,
        help="JSON file holding saved presets",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("agents", help="List registered agents")

    status = commands.add_parser("status", help="Show an agent's capture status")
    status.add_argument("url", help="Agent URL")

    start = commands.add_parser("start", help="Start a capture")
    start.add_argument("url", help="Agent URL")
    start.add_argument("-i", "--interface", help="Interface (defaults to the agent's current one)")
    _add_filter_arguments(start)

    stop = commands.add_parser("stop", help="Stop the running capture")
    stop.add_argument("url", help="Agent URL")

    interface = commands.add_parser("interface", help="Select the capture interface")
    interface.add_argument("url", help="Agent URL")
    interface.add_argument("name", help="Interface name")

    compile_ = commands.add_parser("compile", help="Print the BPF for filter rules")
    compile_.add_argument("rules", nargs="+", help="Filter rules")

    commands.add_parser("ports", help="List well-known ports for port rules")

    presets = commands.add_parser("presets", help="Manage saved filter presets")
    actions = presets.add_subparsers(dest="action", required=True)

    list_ = actions.add_parser("list", help="List presets visible in a scope")
    list_.add_argument("scope", help='Agent id or "global"')

    save = actions.add_parser("save", help="Save a preset")
    save.add_argument("scope", help='Agent id or "global"')
    save.add_argument("name", help="Preset name")
    save.add_argument("--id", type=int, help="Replace the preset with this id")
    _add_filter_arguments(save)

    delete = actions.add_parser("delete", help="Delete a preset")
    delete.add_argument("scope", help='Agent id or "global"')
    delete.add_argument("id", type=int, help="Preset id")

    return parser


ASYNC_COMMANDS = {
    "agents": cmd_agents,
    "status": cmd_status,
    "start": cmd_start,
    "stop": cmd_stop,
    "interface": cmd_interface,
}

SYNC_COMMANDS = {
    "compile": cmd_compile,
    "ports": cmd_ports,
    "presets": cmd_presets,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "filter", None) is not None and getattr(args, "rules", None):
        parser.error("use either -f/--filter or rule tokens, not both")

    configure_logging(level="DEBUG" if args.verbose else "WARNING", fmt="console")
    console = get_console()

    try:
        if args.command in SYNC_COMMANDS:
            return SYNC_COMMANDS[args.command](args, console)
        return asyncio.run(ASYNC_COMMANDS[args.command](args, console))
    except FilterValidationError as e:
        console.print_error(str(e))
        return 2
    except KeyboardInterrupt:
        console.console.print("\n[yellow]Interrupted[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
