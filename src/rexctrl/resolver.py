"""
Command routing for the Rex body regions.

Maps (region, part, direction, phase) to a command packet, gated by the
capability table. Each command family has one stop rule:

- locomotion: release sends the explicit ``rex_stop``
- setpoint:   release returns to the neutral level 0.5
- nudge:      release sends the command with phase ``stop`` and no delta
- trigger:    release sends the command with phase ``stop``
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from .codec import CommandPacket

DIRECTIONS = ("up", "down", "left", "right")

# Region -> sub-parts, first entry is the default selection
REGIONS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "legsPelvis": ("legs", "pelvis"),
        "headNeck": ("head", "neck"),
        "tailSpine": ("tail", "spine"),
        "fullBody": ("full",),
    }
)

DEFAULT_REGION = "tailSpine"

REGION_TITLES = {
    "legsPelvis": "Legs / Pelvis",
    "headNeck": "Head / Neck",
    "tailSpine": "Tail / Spine",
    "fullBody": "Full Body",
}

CAPABILITIES: Mapping[Tuple[str, str], FrozenSet[str]] = MappingProxyType(
    {
        ("legsPelvis", "legs"): frozenset({"up", "down", "left", "right"}),
        ("legsPelvis", "pelvis"): frozenset({"up", "down"}),
        ("headNeck", "head"): frozenset({"up", "down"}),
        ("headNeck", "neck"): frozenset({"left", "right"}),
        ("tailSpine", "tail"): frozenset({"left", "right"}),
        ("tailSpine", "spine"): frozenset({"up", "down"}),
        ("fullBody", "full"): frozenset({"up", "down", "left", "right"}),
    }
)

NEUTRAL_LEVEL = 0.5
NUDGE_STEP = 0.05


class Family(Enum):
    LOCOMOTION = "locomotion"
    SETPOINT = "setpoint"
    NUDGE = "nudge"
    TRIGGER = "trigger"


@dataclass(frozen=True)
class Route:
    """Command a direction maps to, and how it stops."""

    command: str
    family: Family
    params: Mapping[str, float] = field(default_factory=dict)


def _route(command: str, family: Family, **params: float) -> Route:
    return Route(command, family, MappingProxyType(params))


ROUTES: Mapping[Tuple[str, str, str], Route] = MappingProxyType(
    {
        ("legsPelvis", "legs", "up"): _route("rex_walk_forward", Family.LOCOMOTION, speed=1.0),
        ("legsPelvis", "legs", "down"): _route("rex_walk_backward", Family.LOCOMOTION, speed=1.0),
        ("legsPelvis", "legs", "left"): _route("rex_turn_left", Family.LOCOMOTION, rate=0.6),
        ("legsPelvis", "legs", "right"): _route("rex_turn_right", Family.LOCOMOTION, rate=0.6),
        ("legsPelvis", "pelvis", "up"): _route("rex_pelvis_nudge", Family.NUDGE, delta=NUDGE_STEP),
        ("legsPelvis", "pelvis", "down"): _route("rex_pelvis_nudge", Family.NUDGE, delta=-NUDGE_STEP),
        ("headNeck", "head", "up"): _route("rex_mouth_open", Family.TRIGGER),
        ("headNeck", "head", "down"): _route("rex_mouth_close", Family.TRIGGER),
        ("headNeck", "neck", "left"): _route("rex_neck_yaw_set", Family.SETPOINT, level=1.0),
        ("headNeck", "neck", "right"): _route("rex_neck_yaw_set", Family.SETPOINT, level=0.0),
        ("tailSpine", "tail", "left"): _route("rex_tail_set", Family.SETPOINT, level=1.0),
        ("tailSpine", "tail", "right"): _route("rex_tail_set", Family.SETPOINT, level=0.0),
        ("tailSpine", "spine", "up"): _route("rex_spine_nudge", Family.NUDGE, delta=NUDGE_STEP),
        ("tailSpine", "spine", "down"): _route("rex_spine_nudge", Family.NUDGE, delta=-NUDGE_STEP),
        ("fullBody", "full", "up"): _route("rex_posture", Family.SETPOINT, level=1.0),
        ("fullBody", "full", "down"): _route("rex_posture", Family.SETPOINT, level=0.0),
        ("fullBody", "full", "left"): _route("rex_turn_left", Family.LOCOMOTION, rate=1.0),
        ("fullBody", "full", "right"): _route("rex_turn_right", Family.LOCOMOTION, rate=1.0),
    }
)

# One-shot commands outside the hold cycle
TRIGGERS: Dict[str, CommandPacket] = {
    "roar": CommandPacket(command="rex_roar"),
    "wag": CommandPacket(command="rex_tail_wag"),
    "mouth_open": CommandPacket(command="rex_mouth_open"),
    "mouth_close": CommandPacket(command="rex_mouth_close"),
    "run": CommandPacket(command="rex_run", params={"factor": 1.5}),
    "stop": CommandPacket(command="rex_stop"),
}

# Absolute setters, value clamped into [0, 1]
SETPOINTS: Dict[str, Tuple[str, str]] = {
    "tail": ("rex_tail_set", "level"),
    "neck": ("rex_neck_yaw_set", "level"),
    "spine": ("rex_spine_set", "level"),
    "pelvis": ("rex_pelvis_set", "level"),
    "mouth": ("rex_mouth_set", "level"),
    "posture": ("rex_posture", "level"),
    "stride": ("rex_stride_set", "value"),
}


def allowed_directions(
    region: str,
    part: str,
    capabilities: Mapping[Tuple[str, str], FrozenSet[str]] = CAPABILITIES,
) -> FrozenSet[str]:
    """Directions valid for a region/part (empty for unknown pairs)."""
    return capabilities.get((region, part), frozenset())


def is_allowed(
    region: str,
    part: str,
    direction: str,
    capabilities: Mapping[Tuple[str, str], FrozenSet[str]] = CAPABILITIES,
) -> bool:
    return direction in allowed_directions(region, part, capabilities)


def resolve(
    region: str, part: str, direction: str, phase: str
) -> Optional[CommandPacket]:
    """Resolve a held gesture step to the packet to transmit.

    Args:
        region: Region id (e.g. "tailSpine")
        part: Sub-part id (e.g. "tail")
        direction: One of up/down/left/right
        phase: start, hold or stop

    Returns:
        CommandPacket, or None when the direction is not valid here
    """
    if not is_allowed(region, part, direction):
        return None
    route = ROUTES.get((region, part, direction))
    if route is None:
        return None

    if phase != "stop":
        return CommandPacket(
            command=route.command,
            target=region,
            part=part,
            phase=phase,
            params=route.params,
        )

    if route.family is Family.LOCOMOTION:
        return CommandPacket(command="rex_stop", target=region, part=part, phase=phase)
    if route.family is Family.SETPOINT:
        return CommandPacket(
            command=route.command,
            target=region,
            part=part,
            phase=phase,
            params={name: NEUTRAL_LEVEL for name in route.params},
        )
    # nudge and trigger: cease repeating
    return CommandPacket(command=route.command, target=region, part=part, phase=phase)


def trigger_packet(name: str) -> CommandPacket:
    """One-shot command by short name.

    Raises:
        KeyError: If the trigger is unknown
    """
    try:
        return TRIGGERS[name]
    except KeyError:
        available = ", ".join(sorted(TRIGGERS))
        raise KeyError(f"Unknown trigger '{name}'. Available: {available}") from None


def setpoint_packet(name: str, value: float) -> CommandPacket:
    """Absolute setter with the value clamped into [0, 1].

    Raises:
        KeyError: If the setpoint is unknown
    """
    try:
        command, field_name = SETPOINTS[name]
    except KeyError:
        available = ", ".join(sorted(SETPOINTS))
        raise KeyError(f"Unknown setpoint '{name}'. Available: {available}") from None
    level = max(0.0, min(1.0, float(value)))
    return CommandPacket(command=command, params={field_name: level})
