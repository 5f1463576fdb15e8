"""
Async BLE link manager for the Robo Rex controller.

This module owns the connection lifecycle (discovery, connect, Nordic UART
characteristic binding, notifications, disconnect) and exposes the write
channel used by the serialized write queue.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .codec import (
    CommandPacket,
    decode_notification,
    encode_line,
    encode_packet,
    legacy_packet,
)
from .core import LinkSettings, Observers
from .errors import (
    BindingFailed,
    DiscoveryCancelled,
    NotConnected,
    TransientBusy,
    UnsupportedTransport,
    WriteFailed,
)
from .write_queue import WriteQueue

logger = logging.getLogger(__name__)

# BlueZ reports "Operation already in progress" (org.bluez.Error.InProgress)
_BUSY_PATTERN = re.compile(r"in\s*progress", re.IGNORECASE)

Chooser = Callable[[Sequence[BLEDevice]], Optional[BLEDevice]]


@dataclass
class Connection:
    """One bound session with a peripheral."""

    address: str
    name: Optional[str]
    client: BleakClient
    tx: BleakGATTCharacteristic
    rx: BleakGATTCharacteristic
    connected: bool = True


def matches_filter(
    name: Optional[str],
    service_uuids: Sequence[str],
    settings: LinkSettings,
) -> bool:
    """Check an advertisement against the discovery filter.

    Name prefixes win when configured; otherwise the advertised service
    UUIDs must include the Nordic UART service.

    Args:
        name: Advertised local name (may be None)
        service_uuids: Advertised service UUIDs
        settings: Link settings holding the filter

    Returns:
        True if the peer should be offered for connection
    """
    if settings.name_prefixes:
        return bool(name) and any(
            name.startswith(prefix) for prefix in settings.name_prefixes
        )
    wanted = settings.service_uuid.lower()
    return any(uuid.lower() == wanted for uuid in service_uuids)


def is_busy_error(exc: BaseException) -> bool:
    """True when a bleak error means the adapter has a GATT op in flight."""
    return bool(_BUSY_PATTERN.search(str(exc)))


class LinkManager:
    """Manages the BLE connection to the Rex and its write channel."""

    def __init__(self, settings: Optional[LinkSettings] = None) -> None:
        """Initialize manager with no device connection.

        Args:
            settings: Link settings (defaults if None)
        """
        self.settings = settings or LinkSettings()
        self._connection: Optional[Connection] = None
        self._messages = Observers("Message")
        self._disconnects = Observers("Disconnect")
        self._writes = WriteQueue(
            self,
            chunk_size=self.settings.chunk_size,
            pacing=self.settings.chunk_pacing,
            retry_delay=self.settings.busy_retry_delay,
        )

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to device."""
        connection = self._connection
        return (
            connection is not None
            and connection.connected
            and connection.client.is_connected
        )

    @property
    def connection(self) -> Optional[Connection]:
        """The live connection, if any."""
        return self._connection if self.is_connected else None

    @property
    def write_queue(self) -> WriteQueue:
        return self._writes

    def on_message(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to decoded inbound lines.

        Args:
            callback: Called with each non-empty line from the Rex

        Returns:
            Unsubscribe function
        """
        return self._messages.add(callback)

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to link loss (peer-initiated or local).

        Args:
            callback: Called once per lost connection

        Returns:
            Unsubscribe function
        """
        return self._disconnects.add(callback)

    async def discover(self) -> List[BLEDevice]:
        """Scan for peers matching the discovery filter.

        Returns:
            Matching devices, strongest signal first

        Raises:
            UnsupportedTransport: If the platform cannot scan at all
        """
        logger.info("Scanning for Robo Rex devices...")
        try:
            found = await BleakScanner.discover(
                timeout=self.settings.scan_timeout, return_adv=True
            )
        except (BleakError, OSError) as e:
            raise UnsupportedTransport(f"Bluetooth scanning unavailable: {e}") from e

        matches = []
        for device, adv in found.values():
            name = adv.local_name or device.name
            if matches_filter(name, adv.service_uuids or [], self.settings):
                logger.info(f"Found Rex: {name or 'Unknown'} ({device.address})")
                matches.append((adv.rssi, device))

        if not matches:
            logger.warning("No Robo Rex devices found")
        matches.sort(key=lambda item: item[0], reverse=True)
        return [device for _, device in matches]

    async def connect(
        self,
        address: Optional[str] = None,
        chooser: Optional[Chooser] = None,
    ) -> Connection:
        """Connect to a Rex and bind its UART characteristics.

        Args:
            address: Connect to this address instead of scanning by filter
            chooser: Picks one of the discovered devices; returning None
                cancels (first match is used if omitted)

        Returns:
            The live Connection

        Raises:
            UnsupportedTransport: If Bluetooth is unavailable
            DiscoveryCancelled: If no device was selected
            BindingFailed: If connecting or binding the service fails
        """
        if self._connection is not None and self.is_connected:
            logger.warning("Already connected")
            return self._connection

        device = await self._select_device(address, chooser)

        # Any stale session is dropped; its handles are never reused
        if self._connection is not None:
            self._connection.connected = False
            self._connection = None

        client = BleakClient(
            device,
            disconnected_callback=self._on_client_disconnect,
            timeout=self.settings.connect_timeout,
        )

        logger.info(f"Connecting to {device.name or device.address}...")
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise BindingFailed(f"Connection to {device.address} failed: {e}") from e

        try:
            tx, rx = self._bind(client)
            connection = Connection(
                address=device.address,
                name=device.name,
                client=client,
                tx=tx,
                rx=rx,
            )
            self._connection = connection
            await client.start_notify(
                rx,
                lambda sender, data: self._handle_notification(connection, data),
            )
        except BindingFailed:
            self._connection = None
            await self._close_client(client)
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            self._connection = None
            await self._close_client(client)
            raise BindingFailed(f"Notification setup failed: {e}") from e

        logger.info(f"Connected to {connection.name or connection.address}")
        return connection

    async def disconnect(self) -> None:
        """Disconnect from device. Safe to call when not connected."""
        connection = self._connection
        if connection is None:
            return

        logger.info("Disconnecting...")
        self._invalidate(connection, "Disconnected")

        try:
            await connection.client.stop_notify(connection.rx)
        except Exception as e:
            logger.debug(f"Stop notify failed: {e}")
        await self._close_client(connection.client)

        logger.info("Disconnected")
        self._disconnects.notify()

    async def close(self) -> None:
        """Disconnect and stop the write worker."""
        await self.disconnect()
        await self._writes.close()

    async def write_chunk(self, data: bytes) -> None:
        """Write one chunk to the TX characteristic.

        Raises:
            NotConnected: If there is no live connection
            TransientBusy: If the adapter has another operation in flight
            WriteFailed: On any other write error
        """
        connection = self._connection
        if connection is None or not connection.connected:
            raise NotConnected("Not connected")
        try:
            await connection.client.write_gatt_char(
                connection.tx, data, response=self.settings.write_with_response
            )
        except BleakError as e:
            if is_busy_error(e):
                raise TransientBusy(str(e)) from e
            raise WriteFailed(str(e)) from e

    def send_line(self, line: str) -> "asyncio.Future[None]":
        """Queue a raw text line (newline added if missing)."""
        return self._writes.enqueue(encode_line(line))

    def send_packet(self, packet: CommandPacket) -> "asyncio.Future[None]":
        """Queue an encoded command packet."""
        return self._writes.enqueue(encode_packet(packet).encode("utf-8"))

    def send_control(
        self, target: str, part: str, command: str, phase: Optional[str]
    ) -> "asyncio.Future[None]":
        """Queue a canonical {target, part, command, phase} control line."""
        return self.send_packet(
            CommandPacket(command=command, target=target, part=part, phase=phase)
        )

    def send_command(
        self, target: str, direction: str, phase: Optional[str]
    ) -> "asyncio.Future[None]":
        """Queue a legacy (target, direction, phase) control line."""
        return self.send_packet(legacy_packet(target, direction, phase))

    async def _select_device(
        self, address: Optional[str], chooser: Optional[Chooser]
    ) -> BLEDevice:
        if address:
            logger.info(f"Looking for {address}...")
            try:
                device = await BleakScanner.find_device_by_address(
                    address, timeout=self.settings.scan_timeout
                )
            except (BleakError, OSError) as e:
                raise UnsupportedTransport(
                    f"Bluetooth scanning unavailable: {e}"
                ) from e
            if device is None:
                raise DiscoveryCancelled(f"Device {address} not found")
            return device

        candidates = await self.discover()
        if not candidates:
            raise DiscoveryCancelled("No Robo Rex device found")

        device = chooser(candidates) if chooser else candidates[0]
        if device is None:
            raise DiscoveryCancelled("Device selection cancelled")
        return device

    def _bind(
        self, client: BleakClient
    ) -> Tuple[BleakGATTCharacteristic, BleakGATTCharacteristic]:
        service = client.services.get_service(self.settings.service_uuid)
        if service is None:
            raise BindingFailed(f"Service {self.settings.service_uuid} not found")

        tx = service.get_characteristic(self.settings.tx_uuid)
        rx = service.get_characteristic(self.settings.rx_uuid)
        if tx is None or rx is None:
            raise BindingFailed("UART TX/RX characteristics not found")
        return tx, rx

    async def _close_client(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            logger.error(f"Disconnect failed: {e}")

    def _invalidate(self, connection: Connection, reason: str) -> None:
        connection.connected = False
        if self._connection is connection:
            self._connection = None
        self._writes.fail_pending(NotConnected(reason))

    def _handle_notification(self, connection: Connection, data: bytearray) -> None:
        """Decode and fan out one RX notification.

        Called on the event loop by bleak; must not block.
        """
        if connection is not self._connection:
            return
        text = decode_notification(data)
        if not text:
            return
        logger.info(f"Rex -> client: {text}")
        self._messages.notify(text)

    def _on_client_disconnect(self, client: BleakClient) -> None:
        """Handle device disconnect.

        Args:
            client: The BleakClient that disconnected
        """
        connection = self._connection
        if connection is None or connection.client is not client:
            # Stale client, or a disconnect we initiated ourselves
            return

        logger.warning("Device disconnected")
        self._invalidate(connection, "Peer disconnected")
        self._disconnects.notify()
