"""
CaptureHub Console Output Module

Rich console formatting for the CLI interface.
"""

from rich.box import ROUNDED
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from capturehub.agents.models import Agent, AgentStatus
from capturehub.filters.models import describe_spec
from capturehub.filters.presets import FilterPreset


# Agent status colors
STATUS_COLORS = {
    AgentStatus.IDLE: "bright_white",
    AgentStatus.CAPTURING: "green bold",
    AgentStatus.ERROR: "red bold",
    AgentStatus.DISCONNECTED: "dim",
}


# =============================================================================
# Console Display Class
# =============================================================================


class CaptureHubConsole:
    """Rich console interface for the CaptureHub CLI."""

    def __init__(self, console: Console | None = None):
        """Initialize the console."""
        self.console = console or Console()

    def print_success(self, text: str) -> None:
        """Print a success message."""
        self.console.print(f"  [green]✓[/green] {escape(text)}")

    def print_warning(self, text: str) -> None:
        """Print a warning message."""
        self.console.print(f"  [yellow]⚠[/yellow] {escape(text)}")

    def print_error(self, text: str) -> None:
        """Print an error message."""
        self.console.print(f"  [red]✗[/red] {escape(text)}")

    def print_info(self, text: str) -> None:
        """Print an info message."""
        self.console.print(f"  [cyan]ℹ[/cyan] {escape(text)}")

    def _status_text(self, agent: Agent) -> str:
        style = STATUS_COLORS.get(agent.status, "white")
        return f"[{style}]{agent.status.value}[/{style}]"

    # =========================================================================
    # Agents
    # =========================================================================

    def print_agent_table(self, agents: list[Agent]) -> None:
        """Print the agent roster."""
        if not agents:
            self.console.print("[yellow]No agents registered.[/yellow]")
            return

        table = Table(
            title="Capture Agents",
            box=ROUNDED,
            border_style="bright_blue",
            header_style="bold bright_white",
            title_style="bold cyan",
        )

        table.add_column("ID", style="bright_yellow")
        table.add_column("Name", style="bright_white")
        table.add_column("URL", style="dim")
        table.add_column("Status", justify="center")
        table.add_column("Interface", style="bright_green")
        table.add_column("Packets", justify="right")
        table.add_column("Host", style="dim")

        for agent in agents:
            table.add_row(
                agent.id,
                agent.name,
                agent.url,
                self._status_text(agent),
                agent.interface or "-",
                f"{agent.packets_captured:,}",
                agent.hostname or "-",
            )

        self.console.print(table)

    def print_agent_status(self, agent: Agent) -> None:
        """Print one agent's capture status as a panel."""
        table = Table(box=None, show_header=False, padding=(0, 2))
        table.add_column("Field", style="dim")
        table.add_column("Value", style="bright_white")

        table.add_row("Status", self._status_text(agent))
        table.add_row("Interface", agent.interface or "-")
        table.add_row("Packets", f"{agent.packets_captured:,}")
        table.add_row("Filter", describe_spec(agent.active_filter))

        for name in agent.interfaces:
            ips = ", ".join(agent.interface_addresses.get(name, []))
            table.add_row(f"  {name}", ips or "[dim]no addresses[/dim]")

        if agent.error:
            table.add_row("Error", f"[red]{agent.error}[/red]")
        if agent.last_poll_error:
            table.add_row("Last poll", f"[yellow]{agent.last_poll_error}[/yellow]")

        self.console.print(Panel(
            table,
            title=f"[bold cyan]{agent.name}[/bold cyan] [dim]{agent.url}[/dim]",
            border_style="bright_blue",
            box=ROUNDED,
        ))

    # =========================================================================
    # Filters
    # =========================================================================

    def print_bpf(self, bpf: str | None) -> None:
        """Print a compiled BPF filter."""
        if bpf is None:
            self.print_info("No filter (all traffic)")
            return
        self.console.print(bpf, style="bright_green", highlight=False, markup=False, soft_wrap=True)

    def print_preset_table(self, scope: str, presets: list[FilterPreset]) -> None:
        """Print the presets visible in a scope."""
        if not presets:
            self.console.print(f"[yellow]No presets saved for {scope}.[/yellow]")
            return

        table = Table(
            title=f"Filter Presets ({scope})",
            box=ROUNDED,
            border_style="bright_blue",
            header_style="bold bright_white",
            title_style="bold cyan",
        )

        table.add_column("ID", style="bright_yellow")
        table.add_column("Name", style="bright_white")
        table.add_column("Scope", style="dim")
        table.add_column("Filter", style="bright_green")

        for preset in presets:
            table.add_row(
                str(preset.id),
                preset.name,
                preset.scope,
                describe_spec(preset.spec),
            )

        self.console.print(table)

    def print_ports_table(self, ports: dict[str, str]) -> None:
        """Print well-known ports for building port rules."""
        table = Table(
            title="Common Ports",
            box=ROUNDED,
            border_style="bright_blue",
            header_style="bold bright_white",
            title_style="bold cyan",
        )

        table.add_column("Port", style="bright_yellow", justify="right")
        table.add_column("Service", style="bright_white")

        for port, service in sorted(ports.items(), key=lambda item: int(item[0])):
            table.add_row(port, service)

        self.console.print(table)


# =============================================================================
# Singleton Instance
# =============================================================================

_console: CaptureHubConsole | None = None


def get_console() -> CaptureHubConsole:
    """Get the singleton console instance."""
    global _console
    if _console is None:
        _console = CaptureHubConsole()
    return _console
