"""
Display manager for Rich-based REPL output.

Handles console output for the controller: capability tables, link status,
inbound lines from the Rex and outbound packet echoes.
"""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .resolver import CAPABILITIES, DIRECTIONS, REGION_TITLES, REGIONS, ROUTES


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
        """
        self.console = console or Console()
        self.echo_packets = True

    def print_banner(self) -> None:
        """Print startup banner."""
        panel = Panel(
            "[bold green]RexCtrl - Robo Rex BLE Controller[/bold green]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_status(self, data: dict) -> None:
        """Display link and selection status.

        Args:
            data: Dictionary with connected, device, region, part, direction
        """
        self.console.print(self.format_status_table(data))

    def print_capabilities(self, region: Optional[str] = None) -> None:
        """Display valid directions and their commands per region/part.

        Args:
            region: Limit the table to one region (all if None)
        """
        table = Table(title="Capabilities", show_header=True, header_style="bold cyan")
        table.add_column("Region", style="cyan")
        table.add_column("Part", style="magenta")
        for direction in DIRECTIONS:
            table.add_column(direction.capitalize())

        for region_id, parts in REGIONS.items():
            if region is not None and region_id != region:
                continue
            for part in parts:
                allowed = CAPABILITIES.get((region_id, part), frozenset())
                cells = []
                for direction in DIRECTIONS:
                    route = ROUTES.get((region_id, part, direction))
                    if direction in allowed and route is not None:
                        cells.append(f"[green]{route.command}[/green]")
                    else:
                        cells.append("[dim]-[/dim]")
                table.add_row(region_id, part, *cells)

        self.console.print(table)

    def print_inbound(self, text: str) -> None:
        """Print a line received from the Rex."""
        self.console.print(f"[green]Rex >[/green] {escape(text)}", highlight=False)

    def print_packet(self, line: str, delivered: bool) -> None:
        """Echo an outbound packet line.

        Args:
            line: Encoded wire line (no terminator)
            delivered: False when the link was down (preview only)
        """
        if not self.echo_packets:
            return
        if delivered:
            self.console.print(f"[blue]TX[/blue] {escape(line)}", highlight=False)
        else:
            self.console.print(
                f"[yellow]TX preview[/yellow] {escape(line)} [dim](not connected)[/dim]",
                highlight=False,
            )

    def print_error(self, message: str) -> None:
        """Print red error message.

        Args:
            message: Error message text
        """
        self.console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)

    def print_info(self, message: str) -> None:
        """Print blue info message.

        Args:
            message: Info message text
        """
        self.console.print(f"[cyan]Info:[/cyan] {escape(message)}", highlight=False)

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan")
        table.add_column("Aliases", style="magenta")
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            aliases = ", ".join(cmd.aliases) if cmd.aliases else "-"
            table.add_row(cmd.name, aliases, cmd.description, escape(cmd.usage))

        self.console.print(table)
        self.console.print(
            "[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]"
        )

    def format_status_table(self, data: dict) -> Table:
        """Create Rich Table for status display.

        Args:
            data: Dictionary with connected, device, region, part, direction

        Returns:
            Rich Table object
        """
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="yellow")

        connected = data.get("connected", False)
        table.add_row(
            "Link", "[green]connected[/green]" if connected else "[red]disconnected[/red]"
        )
        table.add_row("Device", data.get("device") or "-")
        table.add_row("Region", self.format_region(data.get("region", "")))
        table.add_row("Part", data.get("part", "-"))
        table.add_row("Direction", data.get("direction") or "-")
        table.add_row("Queued writes", str(data.get("queued", 0)))

        return table

    @staticmethod
    def format_region(region: str) -> str:
        """Human title for a region id."""
        return REGION_TITLES.get(region, region)
