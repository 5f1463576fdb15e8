"""Link manager tests against a fake bleak backend."""

import asyncio
from dataclasses import replace
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from rexctrl import controller as controller_module
from rexctrl.codec import CommandPacket, encode_packet, parse_packet
from rexctrl.controller import LinkManager, is_busy_error, matches_filter
from rexctrl.core import NUS_RX_UUID, NUS_SERVICE_UUID, NUS_TX_UUID, LinkSettings
from rexctrl.errors import (
    BindingFailed,
    DiscoveryCancelled,
    NotConnected,
    UnsupportedTransport,
    WriteFailed,
)

FAST = replace(LinkSettings(), chunk_pacing=0.0, busy_retry_delay=0.001, scan_timeout=0.1)


class FakeService:
    def __init__(self, uuid, char_uuids):
        self.uuid = uuid
        self._chars = {u: SimpleNamespace(uuid=u) for u in char_uuids}

    def get_characteristic(self, uuid):
        return self._chars.get(uuid)


class FakeServices:
    def __init__(self, services):
        self._services = {s.uuid: s for s in services}

    def get_service(self, uuid):
        return self._services.get(uuid)


def nus_services():
    return FakeServices([FakeService(NUS_SERVICE_UUID, [NUS_TX_UUID, NUS_RX_UUID])])


class FakeBleak:
    """Stand-ins for BleakScanner and BleakClient sharing one world state."""

    def __init__(self):
        self.advertised = {}
        self.scan_error = None
        self.clients = []
        self.services_factory = nus_services
        self.connect_error = None
        self.notify_error = None

        world = self

        class FakeClient:
            def __init__(self, device, disconnected_callback=None, timeout=10.0):
                self.device = device
                self.disconnected_callback = disconnected_callback
                self.timeout = timeout
                self.is_connected = False
                self.services = world.services_factory()
                self.notify_callbacks = {}
                self.writes = []
                self.write_errors = []
                world.clients.append(self)

            async def connect(self):
                if world.connect_error is not None:
                    raise world.connect_error
                self.is_connected = True

            async def disconnect(self):
                was_connected = self.is_connected
                self.is_connected = False
                if was_connected and self.disconnected_callback:
                    self.disconnected_callback(self)

            async def start_notify(self, char, callback):
                if world.notify_error is not None:
                    raise world.notify_error
                self.notify_callbacks[char.uuid] = callback

            async def stop_notify(self, char):
                self.notify_callbacks.pop(char.uuid, None)

            async def write_gatt_char(self, char, data, response=False):
                assert char.uuid == NUS_TX_UUID
                if self.write_errors:
                    raise self.write_errors.pop(0)
                self.writes.append(bytes(data))

            def notify(self, data):
                self.notify_callbacks[NUS_RX_UUID](SimpleNamespace(uuid=NUS_RX_UUID), bytearray(data))

            def drop(self):
                self.is_connected = False
                self.disconnected_callback(self)

        class FakeScanner:
            @staticmethod
            async def discover(timeout=5.0, return_adv=False):
                if world.scan_error is not None:
                    raise world.scan_error
                return dict(world.advertised)

            @staticmethod
            async def find_device_by_address(address, timeout=10.0):
                if world.scan_error is not None:
                    raise world.scan_error
                for device, _ in world.advertised.values():
                    if device.address == address:
                        return device
                return None

        self.Client = FakeClient
        self.Scanner = FakeScanner

    def advertise(self, address, name, rssi=-60, service_uuids=()):
        device = SimpleNamespace(address=address, name=name)
        adv = SimpleNamespace(local_name=name, service_uuids=list(service_uuids), rssi=rssi)
        self.advertised[address] = (device, adv)
        return device


@pytest.fixture
def bleak(monkeypatch):
    fake = FakeBleak()
    monkeypatch.setattr(controller_module, "BleakClient", fake.Client)
    monkeypatch.setattr(controller_module, "BleakScanner", fake.Scanner)
    return fake


def test_matches_filter_prefixes_and_service_fallback():
    settings = LinkSettings()
    assert matches_filter("Robo_Rex", [], settings)
    assert matches_filter("Robo_Rex_ESP32S3-01", [], settings)
    assert not matches_filter("WalkingPad", [NUS_SERVICE_UUID], settings)
    assert not matches_filter(None, [], settings)

    by_service = replace(settings, name_prefixes=())
    assert matches_filter(None, [NUS_SERVICE_UUID.upper()], by_service)
    assert not matches_filter("Robo_Rex", [], by_service)


def test_busy_error_detection():
    assert is_busy_error(BleakError("[org.bluez.Error.InProgress] Operation already in progress"))
    assert is_busy_error(BleakError("GATT operation already in progress"))
    assert not is_busy_error(BleakError("Not connected"))


@pytest.mark.asyncio
async def test_connect_binds_and_subscribes(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)

    connection = await link.connect()

    assert link.is_connected
    assert connection.address == "AA:00"
    assert connection.tx.uuid == NUS_TX_UUID
    assert NUS_RX_UUID in bleak.clients[0].notify_callbacks
    await link.close()


@pytest.mark.asyncio
async def test_connect_prefers_strongest_match_and_skips_others(bleak):
    bleak.advertise("AA:01", "Robo_Rex", rssi=-80)
    bleak.advertise("AA:02", "Robo_Rex_ESP32S3", rssi=-40)
    bleak.advertise("AA:03", "Headphones", rssi=-10)
    link = LinkManager(FAST)

    devices = await link.discover()
    assert [d.address for d in devices] == ["AA:02", "AA:01"]

    connection = await link.connect()
    assert connection.address == "AA:02"
    await link.close()


@pytest.mark.asyncio
async def test_connect_again_returns_live_connection(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)

    first = await link.connect()
    second = await link.connect()

    assert first is second
    assert len(bleak.clients) == 1
    await link.close()


@pytest.mark.asyncio
async def test_chooser_can_cancel(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)

    with pytest.raises(DiscoveryCancelled):
        await link.connect(chooser=lambda devices: None)
    assert not link.is_connected


@pytest.mark.asyncio
async def test_nothing_found_is_discovery_cancelled(bleak):
    link = LinkManager(FAST)
    with pytest.raises(DiscoveryCancelled):
        await link.connect()
    with pytest.raises(DiscoveryCancelled):
        await link.connect(address="AA:99")


@pytest.mark.asyncio
async def test_scan_failure_is_unsupported_transport(bleak):
    bleak.scan_error = BleakError("No Bluetooth adapters found.")
    link = LinkManager(FAST)
    with pytest.raises(UnsupportedTransport):
        await link.connect()


@pytest.mark.asyncio
async def test_missing_service_is_binding_failure(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    bleak.services_factory = lambda: FakeServices([])
    link = LinkManager(FAST)

    with pytest.raises(BindingFailed):
        await link.connect()

    assert not link.is_connected
    assert not bleak.clients[0].is_connected


@pytest.mark.asyncio
async def test_missing_characteristic_is_binding_failure(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    bleak.services_factory = lambda: FakeServices([FakeService(NUS_SERVICE_UUID, [NUS_TX_UUID])])
    link = LinkManager(FAST)

    with pytest.raises(BindingFailed):
        await link.connect()


@pytest.mark.asyncio
async def test_connect_error_is_binding_failure(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    bleak.connect_error = BleakError("Device disconnected during connect")
    link = LinkManager(FAST)

    with pytest.raises(BindingFailed):
        await link.connect(address="AA:00")


@pytest.mark.asyncio
async def test_send_packet_writes_chunks(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    packet = CommandPacket(
        command="rex_tail_set", target="tailSpine", part="tail", phase="start", params={"level": 1.0}
    )

    await link.send_packet(packet)

    writes = bleak.clients[0].writes
    assert all(len(w) <= 18 for w in writes)
    assert b"".join(writes).decode() == encode_packet(packet)
    await link.close()


@pytest.mark.asyncio
async def test_legacy_send_command_uses_generic_part(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()

    await link.send_command("legsPelvis", "move_forward", "start")

    packet = parse_packet(b"".join(bleak.clients[0].writes).decode())
    assert (packet.target, packet.part, packet.command) == ("legsPelvis", "full", "move_forward")
    await link.close()


@pytest.mark.asyncio
async def test_busy_write_is_retried_once(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    client = bleak.clients[0]
    client.write_errors = [BleakError("[org.bluez.Error.InProgress] Operation already in progress")]

    await link.send_line("rex_roar")

    assert link.write_queue.retries == 1
    assert client.writes == [b"rex_roar\n"]
    await link.close()


@pytest.mark.asyncio
async def test_other_write_errors_fail_the_message(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    bleak.clients[0].write_errors = [BleakError("Unlikely error")]

    with pytest.raises(WriteFailed):
        await link.send_line("rex_roar")
    assert link.write_queue.retries == 0
    await link.close()


@pytest.mark.asyncio
async def test_inbound_lines_reach_every_subscriber(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    received = []

    def broken(text):
        raise RuntimeError("subscriber bug")

    link.on_message(broken)
    unsubscribe = link.on_message(received.append)

    client = bleak.clients[0]
    client.notify(b"ok rex_roar\r\n")
    client.notify(b"   \n")
    unsubscribe()
    client.notify(b"after unsubscribe")

    assert received == ["ok rex_roar"]
    assert link.is_connected
    await link.close()


@pytest.mark.asyncio
async def test_peer_disconnect_resets_state_and_notifies_once(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    events = []
    link.on_disconnect(lambda: events.append("lost"))
    link.on_disconnect(lambda: 1 / 0)

    client = bleak.clients[0]
    client.drop()
    client.disconnected_callback(client)

    assert not link.is_connected
    assert events == ["lost"]

    with pytest.raises(NotConnected):
        await asyncio.wait_for(link.send_line("rex_roar"), timeout=1.0)
    with pytest.raises(NotConnected):
        await link.write_chunk(b"x")

    await link.disconnect()
    assert events == ["lost"]
    await link.close()


@pytest.mark.asyncio
async def test_explicit_disconnect_is_idempotent(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    events = []
    link.on_disconnect(lambda: events.append("down"))

    await link.disconnect()
    await link.disconnect()

    assert events == ["down"]
    assert not link.is_connected
    assert bleak.clients[0].notify_callbacks == {}


@pytest.mark.asyncio
async def test_reconnect_ignores_stale_client(bleak):
    bleak.advertise("AA:00", "Robo_Rex")
    link = LinkManager(FAST)
    await link.connect()
    old = bleak.clients[0]
    old.drop()

    await link.connect()
    events = []
    link.on_disconnect(lambda: events.append("down"))
    old.disconnected_callback(old)
    old.notify_callbacks[NUS_RX_UUID](None, bytearray(b"stale"))

    assert link.is_connected
    assert events == []
    assert link.connection.client is bleak.clients[1]
    await link.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [BleakError("Notify failed"), asyncio.TimeoutError(), OSError("Adapter went away")],
)
async def test_notify_setup_failure_tears_down_client(bleak, error):
    bleak.advertise("AA:00", "Robo_Rex")
    bleak.notify_error = error
    link = LinkManager(FAST)

    with pytest.raises(BindingFailed):
        await link.connect()

    assert not link.is_connected
    assert link.connection is None
    assert not bleak.clients[0].is_connected
