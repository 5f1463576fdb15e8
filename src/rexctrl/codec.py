"""
Line codec for the Rex command protocol.

Outbound packets are compact JSON objects, one per line, written in small
chunks. Inbound notifications are plain UTF-8 text.
"""

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Union

from .core import CHUNK_SIZE
from .errors import PacketError

TERMINATOR = "\n"

GENERIC_PART = "full"

PHASES = ("start", "hold", "stop")

# Field order on the wire; params follow
_HEADER_KEYS = ("target", "part", "command", "phase")


@dataclass(frozen=True)
class CommandPacket:
    """One protocol command with optional numeric parameters."""

    command: str
    target: Optional[str] = None
    part: Optional[str] = None
    phase: Optional[str] = None
    params: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.command:
            raise PacketError("Packet command must not be empty")
        if self.phase is not None and self.phase not in PHASES:
            raise PacketError(f"Unknown phase: {self.phase}")
        for key in self.params:
            if key in _HEADER_KEYS:
                raise PacketError(f"Parameter name collides with header: {key}")
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def with_phase(self, phase: Optional[str]) -> "CommandPacket":
        """Return a copy of this packet carrying a different phase."""
        return CommandPacket(
            command=self.command,
            target=self.target,
            part=self.part,
            phase=phase,
            params=self.params,
        )

    def to_dict(self) -> dict:
        """Wire representation; omitted fields are absent, not null."""
        data: dict = {}
        for key in _HEADER_KEYS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(self.params)
        return data


def terminate(line: str) -> str:
    """Append the line terminator unless already present."""
    return line if line.endswith(TERMINATOR) else line + TERMINATOR


def encode_packet(packet: CommandPacket) -> str:
    """Encode a packet as a newline-terminated wire line."""
    return terminate(json.dumps(packet.to_dict(), separators=(",", ":")))


def encode_line(line: str) -> bytes:
    """Terminate a text line and encode it for transmission."""
    return terminate(line).encode("utf-8")


def chunk(data: bytes, size: int = CHUNK_SIZE) -> List[bytes]:
    """Split bytes into ordered slices of at most ``size`` bytes."""
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    return [data[i : i + size] for i in range(0, len(data), size)]


def decode_notification(data: Union[bytes, bytearray, memoryview]) -> str:
    """Decode an inbound notification to trimmed text."""
    return bytes(data).decode("utf-8", errors="replace").strip()


def legacy_packet(target: str, direction: str, phase: Optional[str]) -> CommandPacket:
    """Build the canonical packet for the legacy (target, direction, phase) form."""
    return CommandPacket(
        command=direction, target=target, part=GENERIC_PART, phase=phase
    )


def parse_packet(line: str) -> CommandPacket:
    """Parse a wire line back into a packet.

    Accepts the canonical form, the per-limb ``cmd`` form and the legacy
    ``direction`` form (whose part resolves to the generic value).

    Args:
        line: One wire line, with or without terminator

    Returns:
        Parsed CommandPacket

    Raises:
        PacketError: If the line is not a valid packet
    """
    try:
        data: Any = json.loads(line)
    except ValueError as exc:
        raise PacketError(f"Invalid packet JSON: {line.strip()!r}") from exc

    if not isinstance(data, dict):
        raise PacketError("Packet must be a JSON object")

    data = dict(data)
    target = data.pop("target", None)
    phase = data.pop("phase", None)

    if "command" in data:
        command = data.pop("command")
        part = data.pop("part", None)
    elif "cmd" in data:
        command = data.pop("cmd")
        part = data.pop("part", None)
    elif "direction" in data:
        command = data.pop("direction")
        part = data.pop("part", GENERIC_PART)
    else:
        raise PacketError("Packet has no command")

    if not isinstance(command, str):
        raise PacketError("Packet command must be a string")

    params = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise PacketError(f"Non-numeric parameter {key}={value!r}")
        params[key] = value

    return CommandPacket(
        command=command, target=target, part=part, phase=phase, params=params
    )
