"""
Main REPL application for Robo Rex control.

Interactive command loop with async support, auto-completion, hold-to-repeat
gestures and a live echo of inbound lines from the Rex.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from .codec import CommandPacket
from .commands import COMMANDS, CommandCompleter, get_command
from .controller import LinkManager
from .core import LinkSettings
from .dispatcher import HoldDispatcher
from .display import DisplayManager
from .errors import RexCtrlError
from .resolver import setpoint_packet, trigger_packet

logger = logging.getLogger(__name__)

DEFAULT_HOLD_MS = 500


class RexCtrlREPL:
    """Interactive REPL for Robo Rex control."""

    def __init__(
        self,
        settings: Optional[LinkSettings] = None,
        address: Optional[str] = None,
    ) -> None:
        """Initialize REPL with link, dispatcher and display manager.

        Args:
            settings: Link settings (environment defaults if None)
            address: Connect to this address instead of scanning
        """
        self.settings = settings or LinkSettings.from_env()
        self.address = address
        self.link = LinkManager(self.settings)
        self.dispatcher = HoldDispatcher(self.link, interval=self.settings.hold_interval)
        self.display = DisplayManager()
        self.running = False
        self.session: PromptSession

        # Set up callbacks
        self._unsubscribe = [
            self.link.on_message(self.display.print_inbound),
            self.link.on_disconnect(self._on_device_disconnect),
            self.dispatcher.on_packet(self._on_packet),
        ]

        # Create prompt session with auto-completion
        self.session = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()

        # Auto-connect to device on startup
        self.display.console.print("Attempting to connect to Robo Rex...")
        try:
            await self.link.connect(address=self.address)
            self.display.console.print("✓ Connected successfully\n")
        except RexCtrlError as e:
            self.display.console.print(
                f"⚠ Could not connect ({e}). Use 'connect' to retry; "
                "gestures run in preview mode until then.\n"
            )

        try:
            with patch_stdout():
                while self.running:
                    try:
                        text = await self.session.prompt_async(self._get_prompt())
                        if text.strip():
                            await self._handle_input(text.strip())
                    except KeyboardInterrupt:
                        # Ctrl+C releases any held direction
                        await self.dispatcher.release()
                        self.display.console.print()
                        continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False
            await self.shutdown()

    async def shutdown(self) -> None:
        """Release gestures, drop subscriptions and close the link."""
        await self.dispatcher.close()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        await self.link.close()

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection and selection state.

        Returns:
            FormattedText for prompt_toolkit
        """
        selection = f"{self.dispatcher.region}/{self.dispatcher.part}"
        held = self.dispatcher.active_direction
        if held:
            selection += f" ({held})"

        connection = self.link.connection
        if connection is not None:
            device_name = connection.name or connection.address
            return FormattedText([("class:prompt", f"[{device_name}] {selection} > ")])
        return FormattedText([("class:prompt", f"[disconnected] {selection} > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        rest = parts[1] if len(parts) > 1 else ""

        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        handler = getattr(self, cmd.handler, None)
        if handler is None:
            self.display.print_error(f"Handler not found: {cmd.handler}")
            return

        # Raw lines keep their spacing
        args = [rest] if cmd.name == "send" and rest else rest.split()

        try:
            await handler(args)
        except RexCtrlError as e:
            self.display.print_error(str(e))
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    def _on_packet(self, packet: CommandPacket, line: str, delivered: bool) -> None:
        self.display.print_packet(line, delivered)

    def _on_device_disconnect(self) -> None:
        """Callback when device disconnects."""
        self.display.print_info("Device disconnected")

    async def _send_one_shot(self, packet: CommandPacket) -> None:
        if not self.link.is_connected:
            self.display.print_error("Not connected. Use 'connect' first.")
            return
        await self.link.send_packet(packet)
        self.display.print_info(f"Sent {packet.command}")

    # ========== Command Handlers ==========

    async def cmd_connect(self, args: list) -> None:
        """Scan for and connect to the Rex."""
        if self.link.is_connected:
            self.display.print_info("Already connected")
            return

        address = args[0] if args else self.address
        self.display.print_info(f"Connecting to {address or 'first Robo Rex found'}...")
        connection = await self.link.connect(address=address)
        self.display.print_info(f"Connected to {connection.name or connection.address}")

    async def cmd_disconnect(self, args: list) -> None:
        """Disconnect from device."""
        if not self.link.is_connected:
            self.display.print_info("Not connected")
            return

        await self.dispatcher.release()
        await self.link.disconnect()

    async def cmd_select(self, args: list) -> None:
        """Select a region and optionally its part."""
        if not args:
            self.display.print_error("Usage: select <region> [part]")
            return
        try:
            await self.dispatcher.select_region(args[0], args[1] if len(args) > 1 else None)
        except ValueError as e:
            self.display.print_error(str(e))
            return
        self.display.print_info(
            f"Selected {self.display.format_region(self.dispatcher.region)} "
            f"({self.dispatcher.part})"
        )

    async def cmd_part(self, args: list) -> None:
        """Select a part of the current region."""
        if not args:
            self.display.print_error("Usage: part <part>")
            return
        try:
            await self.dispatcher.select_part(args[0])
        except ValueError as e:
            self.display.print_error(str(e))
            return
        self.display.print_info(f"Part: {self.dispatcher.part}")

    async def cmd_press(self, args: list) -> None:
        """Press and keep holding a direction."""
        if not args:
            self.display.print_error("Usage: press <up|down|left|right>")
            return
        direction = args[0].lower()
        if not await self.dispatcher.press(direction):
            self.display.print_error(
                f"'{direction}' is not available for "
                f"{self.dispatcher.region}/{self.dispatcher.part}"
            )
            return
        self.display.print_info(f"Holding {direction}; 'release' to stop")

    async def cmd_release(self, args: list) -> None:
        """Release the held direction."""
        if not await self.dispatcher.release():
            self.display.print_info("Nothing held")

    async def cmd_hold(self, args: list) -> None:
        """Hold a direction for a duration in milliseconds."""
        if not args:
            self.display.print_error("Usage: hold <direction> [ms]")
            return

        try:
            duration_ms = int(args[1]) if len(args) > 1 else DEFAULT_HOLD_MS
        except ValueError:
            self.display.print_error(f"Invalid duration: {args[1]}")
            return

        direction = args[0].lower()
        if not await self.dispatcher.press(direction):
            self.display.print_error(
                f"'{direction}' is not available for "
                f"{self.dispatcher.region}/{self.dispatcher.part}"
            )
            return
        try:
            await asyncio.sleep(duration_ms / 1000)
        finally:
            await self.dispatcher.release()

    async def cmd_trigger(self, args: list) -> None:
        """Send a one-shot command."""
        if not args:
            self.display.print_error("Usage: trigger <name>")
            return
        try:
            packet = trigger_packet(args[0])
        except KeyError as e:
            self.display.print_error(e.args[0])
            return
        await self._send_one_shot(packet)

    async def cmd_set(self, args: list) -> None:
        """Set an absolute level."""
        if len(args) < 2:
            self.display.print_error("Usage: set <name> <level>")
            return
        try:
            level = float(args[1])
        except ValueError:
            self.display.print_error(f"Invalid level: {args[1]}")
            return
        try:
            packet = setpoint_packet(args[0], level)
        except KeyError as e:
            self.display.print_error(e.args[0])
            return
        await self._send_one_shot(packet)

    async def cmd_send(self, args: list) -> None:
        """Send a raw line."""
        if not args:
            self.display.print_error("Usage: send <line>")
            return
        if not self.link.is_connected:
            self.display.print_error("Not connected. Use 'connect' first.")
            return
        await self.link.send_line(args[0])
        self.display.print_info("Sent")

    async def cmd_echo(self, args: list) -> None:
        """Show or hide outbound packet lines."""
        if args:
            choice = args[0].lower()
            if choice not in ("on", "off"):
                self.display.print_error("Usage: echo [on|off]")
                return
            self.display.echo_packets = choice == "on"
        state = "on" if self.display.echo_packets else "off"
        self.display.print_info(f"Packet echo {state}")

    async def cmd_caps(self, args: list) -> None:
        """Show valid directions per region."""
        self.display.print_capabilities(args[0] if args else None)

    async def cmd_status(self, args: list) -> None:
        """Show link and selection status."""
        connection = self.link.connection
        self.display.print_status(
            {
                "connected": self.link.is_connected,
                "device": (connection.name or connection.address) if connection else None,
                "region": self.dispatcher.region,
                "part": self.dispatcher.part,
                "direction": self.dispatcher.active_direction,
                "queued": self.link.write_queue.pending,
            }
        )

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        await self.dispatcher.release()

        if self.link.is_connected:
            self.display.print_info("Disconnecting...")
            await self.link.disconnect()

        self.display.console.print("[green]Goodbye![/green]")
        self.running = False


async def run_cli_command(
    command: str,
    argument: Optional[str],
    settings: LinkSettings,
    address: Optional[str] = None,
) -> None:
    """Run a single CLI command and exit."""
    link = LinkManager(settings)
    display = DisplayManager()

    try:
        if command == "scan":
            devices = await link.discover()
            if not devices:
                display.print_error("No Robo Rex devices found")
                sys.exit(1)
            for device in devices:
                display.console.print(f"{device.address}  {device.name or 'Unknown'}")
            return

        if command == "trigger":
            packet = trigger_packet(argument or "")
        elif command == "send":
            packet = None
        else:
            display.print_error(f"Unknown command: {command}")
            sys.exit(1)

        display.print_info("Connecting to device...")
        await link.connect(address=address)

        if packet is not None:
            await link.send_packet(packet)
            display.print_info(f"Sent {packet.command}")
        else:
            await link.send_line(argument or "")
            display.print_info("Sent")

    finally:
        # Ensure we disconnect if still connected
        await link.close()


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(message)s")


def build_settings(args: argparse.Namespace) -> LinkSettings:
    """Environment settings overridden by command line flags."""
    settings = LinkSettings.from_env()
    if args.name_prefix:
        settings = replace(settings, name_prefixes=tuple(args.name_prefix))
    if args.scan_timeout is not None:
        settings = replace(settings, scan_timeout=args.scan_timeout)
    return settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Robo Rex BLE remote control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rexctrl                       # Start interactive REPL
  rexctrl --scan                # List Robo Rex devices in range
  rexctrl --trigger roar        # Connect, roar, disconnect
  rexctrl --send rex_tail_wag   # Send a raw line
  rexctrl -v --address AA:BB:CC:DD:EE:FF
        """,
    )

    parser.add_argument("--scan", action="store_true", help="List matching devices")
    parser.add_argument("--trigger", metavar="NAME", help="Send a one-shot command")
    parser.add_argument("--send", metavar="LINE", help="Send a raw line")

    parser.add_argument("--address", help="Connect to this address instead of scanning")
    parser.add_argument(
        "--name-prefix",
        action="append",
        metavar="PREFIX",
        help="Advertised name prefix to match (repeatable)",
    )
    parser.add_argument("--scan-timeout", type=float, help="Scan timeout in seconds")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Log more (-vv for debug)"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the REPL application."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    settings = build_settings(args)

    # Check which command was requested
    commands = []
    if args.scan:
        commands.append(("scan", None))
    if args.trigger:
        commands.append(("trigger", args.trigger))
    if args.send:
        commands.append(("send", args.send))

    # If no CLI commands, start REPL
    if not commands:
        try:
            repl = RexCtrlREPL(settings, address=args.address)
            asyncio.run(repl.run())
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(0)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        if len(commands) > 1:
            print("Error: Only one command can be specified at a time", file=sys.stderr)
            sys.exit(1)

        command, argument = commands[0]
        try:
            asyncio.run(run_cli_command(command, argument, settings, args.address))
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(1)
        except KeyError as e:
            print(f"Error: {e.args[0]}", file=sys.stderr)
            sys.exit(1)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
