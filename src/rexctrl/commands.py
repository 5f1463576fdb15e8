"""
Command definitions and auto-completion for REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .resolver import DIRECTIONS, REGIONS, SETPOINTS, TRIGGERS


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


# Define all available commands
COMMANDS = [
    Command(
        name="connect",
        aliases=["c"],
        description="Scan for and connect to the Rex",
        usage="connect [address]",
        handler="cmd_connect",
    ),
    Command(
        name="disconnect",
        aliases=["dc"],
        description="Disconnect from device",
        usage="disconnect",
        handler="cmd_disconnect",
    ),
    Command(
        name="select",
        aliases=["sel"],
        description="Select a body region (and part)",
        usage="select <region> [part]",
        handler="cmd_select",
    ),
    Command(
        name="part",
        aliases=["pt"],
        description="Select a part of the current region",
        usage="part <part>",
        handler="cmd_part",
    ),
    Command(
        name="press",
        aliases=["p"],
        description="Press and keep holding a direction",
        usage="press <up|down|left|right>",
        handler="cmd_press",
    ),
    Command(
        name="release",
        aliases=["r"],
        description="Release the held direction",
        usage="release",
        handler="cmd_release",
    ),
    Command(
        name="hold",
        aliases=["ho"],
        description="Hold a direction for a duration",
        usage="hold <direction> [ms]",
        handler="cmd_hold",
    ),
    Command(
        name="trigger",
        aliases=["t"],
        description="Send a one-shot command",
        usage="trigger <name>",
        handler="cmd_trigger",
    ),
    Command(
        name="set",
        aliases=[],
        description="Set an absolute level 0.0-1.0",
        usage="set <name> <level>",
        handler="cmd_set",
    ),
    Command(
        name="send",
        aliases=[],
        description="Send a raw line",
        usage="send <line>",
        handler="cmd_send",
    ),
    Command(
        name="echo",
        aliases=["e"],
        description="Show or hide outbound packet lines",
        usage="echo [on|off]",
        handler="cmd_echo",
    ),
    Command(
        name="caps",
        aliases=["cap"],
        description="Show valid directions per region",
        usage="caps [region]",
        handler="cmd_caps",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Show link and selection status",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


def _argument_choices(command: Command, position: int, parts: List[str]) -> Iterable[str]:
    """Candidate values for the argument at ``position`` (1-based)."""
    if command.name == "select":
        if position == 1:
            return REGIONS.keys()
        if position == 2:
            return REGIONS.get(parts[1], ())
    elif command.name == "part" and position == 1:
        return sorted({part for subs in REGIONS.values() for part in subs})
    elif command.name in ("press", "hold") and position == 1:
        return DIRECTIONS
    elif command.name == "trigger" and position == 1:
        return sorted(TRIGGERS)
    elif command.name == "set" and position == 1:
        return sorted(SETPOINTS)
    elif command.name == "echo" and position == 1:
        return ("on", "off")
    return ()


class CommandCompleter(Completer):
    """Auto-completion for commands and arguments."""

    def __init__(self) -> None:
        """Initialize completer."""
        self._command_names = set()
        self._command_aliases = set()

        for cmd in COMMANDS:
            self._command_names.add(cmd.name)
            self._command_aliases.update(cmd.aliases)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands/arguments
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text:
            return

        # Trailing space means a new (empty) word is being typed
        if text.endswith(" "):
            parts.append("")

        if len(parts) <= 1:
            partial_cmd = parts[0].lower() if parts else ""
            all_names = self._command_names | self._command_aliases

            for name in sorted(all_names):
                if name.startswith(partial_cmd):
                    completion = name[len(partial_cmd) :]
                    yield Completion(
                        completion,
                        start_position=-len(partial_cmd),
                        display=f"({name})",
                    )
            return

        cmd = get_command(parts[0].lower())
        if cmd is None:
            return

        partial = parts[-1]
        for choice in _argument_choices(cmd, len(parts) - 1, parts):
            if choice.startswith(partial):
                yield Completion(
                    choice[len(partial) :],
                    start_position=-len(partial),
                    display=choice,
                )
