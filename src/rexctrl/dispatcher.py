"""
Hold-to-repeat dispatcher.

Turns press / hold / release into ``start`` / ``hold`` / ``stop`` packets for
the selected region and sub-part. One gesture session is active at most; its
repeating timer is disarmed before the stop packet is built.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Protocol, Tuple

from .codec import CommandPacket, encode_packet
from .core import HOLD_INTERVAL_S, Observers
from .resolver import CAPABILITIES, DEFAULT_REGION, REGIONS, is_allowed, resolve

logger = logging.getLogger(__name__)

Resolver = Callable[[str, str, str, str], Optional[CommandPacket]]


class PacketSink(Protocol):
    """What the dispatcher needs from the link."""

    @property
    def is_connected(self) -> bool: ...

    def send_packet(self, packet: CommandPacket) -> "asyncio.Future[None]": ...


class Timer(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Timer]


class RepeatingTimer:
    """Calls ``callback`` every ``interval`` seconds until cancelled.

    Ticks are scheduled on an absolute grid (start + n * interval) so slow
    callbacks do not push later ticks back.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._callback = callback
        self._loop = loop or asyncio.get_running_loop()
        self._origin = self._loop.time()
        self._ticks = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._arm()

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        self._ticks += 1
        when = self._origin + self._ticks * self._interval
        self._handle = self._loop.call_at(when, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._arm()
        self._callback()


@dataclass(frozen=True)
class GestureSession:
    """One press-hold-release interaction."""

    region: str
    part: str
    direction: str
    timer: Timer


class HoldDispatcher:
    """State machine driving held gestures over the link."""

    def __init__(
        self,
        link: PacketSink,
        resolver: Resolver = resolve,
        capabilities: Mapping[Tuple[str, str], FrozenSet[str]] = CAPABILITIES,
        interval: float = HOLD_INTERVAL_S,
        timer_factory: TimerFactory = RepeatingTimer,
        regions: Mapping[str, Tuple[str, ...]] = REGIONS,
    ) -> None:
        """Initialize dispatcher in the idle state.

        Args:
            link: Link used to transmit packets
            resolver: Maps (region, part, direction, phase) to a packet
            capabilities: Valid directions per (region, part)
            interval: Seconds between hold packets
            timer_factory: Builds the repeating timer for a gesture
            regions: Region -> sub-parts (first is the default)
        """
        self._link = link
        self._resolver = resolver
        self._capabilities = capabilities
        self._interval = interval
        self._timer_factory = timer_factory
        self._regions = regions

        self._region = DEFAULT_REGION if DEFAULT_REGION in regions else next(iter(regions))
        self._parts: Dict[str, str] = {
            region: parts[0] for region, parts in regions.items()
        }
        self._session: Optional[GestureSession] = None
        self._packets = Observers("Packet")

    @property
    def region(self) -> str:
        return self._region

    @property
    def part(self) -> str:
        return self._parts[self._region]

    @property
    def state(self) -> str:
        return "active" if self._session is not None else "idle"

    @property
    def active_direction(self) -> Optional[str]:
        return self._session.direction if self._session is not None else None

    @property
    def session(self) -> Optional[GestureSession]:
        return self._session

    def on_packet(
        self, callback: Callable[[CommandPacket, str, bool], None]
    ) -> Callable[[], None]:
        """Observe outbound attempts.

        Args:
            callback: Called with (packet, encoded line, delivered) where
                delivered is False for preview-only sends

        Returns:
            Unsubscribe function
        """
        return self._packets.add(callback)

    async def select_region(self, region: str, part: Optional[str] = None) -> None:
        """Select a region (and optionally its part), releasing any held gesture."""
        if region not in self._regions:
            raise ValueError(f"Unknown region: {region}")
        if part is not None and part not in self._regions[region]:
            raise ValueError(f"Unknown part '{part}' for region {region}")

        stopping = self._end_session()
        self._region = region
        if part is not None:
            self._parts[region] = part
        await self._settle(stopping, "stop")

    async def select_part(self, part: str) -> None:
        """Select a sub-part of the current region, releasing any held gesture."""
        await self.select_region(self._region, part)

    async def press(self, direction: str) -> bool:
        """Begin a held gesture.

        A gesture already in progress is fully released first, even when the
        new direction turns out not to be valid for the current selection.
        The stop, the new session and its start packet are all issued before
        the first suspension point, so concurrent presses and releases see a
        consistent session.

        Args:
            direction: One of up/down/left/right

        Returns:
            True if a gesture started
        """
        stopping = self._end_session()

        region, part = self._region, self.part
        packet = None
        if is_allowed(region, part, direction, self._capabilities):
            packet = self._resolver(region, part, direction, "start")
        if packet is None:
            logger.debug(f"{direction} not available for {region}/{part}")
            await self._settle(stopping, "stop")
            return False

        timer = self._timer_factory(self._interval, self._tick)
        self._session = GestureSession(region, part, direction, timer)
        starting = self._emit(packet)

        await self._settle(stopping, "stop")
        await self._settle(starting, "start")
        return True

    async def release(self) -> bool:
        """End the held gesture with exactly one stop packet.

        Returns:
            True if a gesture was active
        """
        active = self._session is not None
        await self._settle(self._end_session(), "stop")
        return active

    async def close(self) -> None:
        """Tear down: release any active gesture."""
        await self.release()

    def _end_session(self) -> Optional["asyncio.Future[None]"]:
        """Disarm and clear the session, emitting its stop packet.

        Returns:
            Delivery future of the stop, or None when nothing was sent
        """
        session = self._session
        if session is None:
            return None

        # Disarm before deciding the stop so no hold can follow it
        session.timer.cancel()
        self._session = None

        packet = self._resolver(session.region, session.part, session.direction, "stop")
        if packet is None:
            return None
        return self._emit(packet)

    def _tick(self) -> None:
        session = self._session
        if session is None:
            return
        packet = self._resolver(session.region, session.part, session.direction, "hold")
        if packet is None:
            return
        delivery = self._emit(packet)
        if delivery is not None:
            delivery.add_done_callback(self._report_hold)

    def _emit(self, packet: CommandPacket) -> Optional["asyncio.Future[None]"]:
        """Log the packet and queue it if the link is up."""
        line = encode_packet(packet).rstrip("\n")
        delivery = None
        if self._link.is_connected:
            logger.info(f"[TX] {line}")
            delivery = self._link.send_packet(packet)
        else:
            logger.info(f"[TX PREVIEW] {line} (not connected)")
        self._packets.notify(packet, line, delivery is not None)
        return delivery

    async def _settle(self, delivery: Optional["asyncio.Future[None]"], phase: str) -> None:
        if delivery is None:
            return
        try:
            await delivery
        except Exception as e:
            logger.error(f"{phase.capitalize()} send failed: {e}")

    @staticmethod
    def _report_hold(delivery: "asyncio.Future[None]") -> None:
        if delivery.cancelled():
            return
        exc = delivery.exception()
        if exc is not None:
            logger.warning(f"Hold send failed: {exc}")
