# test_ble_session.py
import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from ble_session import (
    BindQuality,
    BleSessionManager,
    OutcomeKind,
    SessionState,
    bind_characteristic,
    is_candidate,
)
from payload_codec import TelemetryDecoder
from settings import CHARACTERISTIC_UUID, SERVICE_UUID

BATTERY_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"


# ----------------------------------------------------------------------
# Fakes for bleak
# ----------------------------------------------------------------------
def advert(name, address, rssi=-60, uuids=()):
    device = SimpleNamespace(name=name, address=address)
    data = SimpleNamespace(local_name=name, service_uuids=list(uuids), rssi=rssi)
    return device, data


def service(uuid, *char_uuids):
    return SimpleNamespace(uuid=uuid, characteristics=[SimpleNamespace(uuid=c) for c in char_uuids])


class FakeScanner:
    def __init__(self, adverts, detection_callback=None):
        self.adverts = adverts
        self.callback = detection_callback
        self.stopped = False

    async def start(self):
        for device, data in self.adverts:
            self.callback(device, data)

    async def stop(self):
        self.stopped = True


class FakeClient:
    def __init__(self, device, disconnected_callback=None, services=(), connect_error=None, notify_error=None):
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.services = list(services)
        self.connect_error = connect_error
        self.notify_error = notify_error
        self.mtu_size = 23
        self.notify_callback = None
        self.connected = False

    async def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def start_notify(self, characteristic, callback):
        if self.notify_error:
            raise self.notify_error
        self.notified_char = characteristic
        self.notify_callback = callback

    async def stop_notify(self, characteristic):
        self.notify_callback = None

    async def disconnect(self):
        # bleak fires the callback for intentional disconnects too
        self.connected = False
        self.disconnected_callback(self)

    def push(self, payload):
        self.notify_callback(self.notified_char, bytearray(payload))

    def drop_link(self):
        self.connected = False
        self.disconnected_callback(self)


class Radio:
    """Wires fake scanner/client factories into a session manager."""

    def __init__(self, adverts, services=(service(SERVICE_UUID, CHARACTERISTIC_UUID),), **client_kwargs):
        self.adverts = adverts
        self.services = services
        self.client_kwargs = client_kwargs
        self.clients = []
        self.scanners = []
        self.fields = []
        self.link_lost = 0

    def scanner(self, detection_callback=None):
        scanner = FakeScanner(self.adverts, detection_callback)
        self.scanners.append(scanner)
        return scanner

    def client(self, device, disconnected_callback=None):
        client = FakeClient(device, disconnected_callback, self.services, **self.client_kwargs)
        self.clients.append(client)
        return client

    def manager(self, **kwargs):
        def lost():
            self.link_lost += 1

        return BleSessionManager(
            TelemetryDecoder(),
            on_field=self.fields.append,
            on_link_lost=lost,
            scanner_factory=self.scanner,
            client_factory=self.client,
            scan_timeout=kwargs.pop("scan_timeout", 0.05),
            **kwargs,
        )


def run(coro):
    return asyncio.run(coro)


# ----------------------------------------------------------------------
# Candidate matching
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    "name, uuids, expected",
    [
        ("ESP32-DevKit-07", (), True),
        ("landslide_sensor", (), True),
        ("esp32_ble", (), True),
        ("My Sensor Tag", (), True),
        (None, ("6E400001-B5A3-F393-E0A9-E50E24DCCA9E",), True),
        ("Galaxy Buds", (), False),
        (None, (BATTERY_SERVICE,), False),
    ],
)
def test_is_candidate(name, uuids, expected):
    assert is_candidate(name, uuids) is expected


# ----------------------------------------------------------------------
# GATT binding
# ----------------------------------------------------------------------
def test_exact_binding_prefers_candidate_order():
    services = [
        service("6e400001-b5a3-f393-e0a9-e50e24dcca9e", "6e400003-b5a3-f393-e0a9-e50e24dcca9e"),
        service(SERVICE_UUID.upper(), BATTERY_LEVEL, CHARACTERISTIC_UUID),
    ]
    binding = bind_characteristic(services)
    assert binding.quality is BindQuality.EXACT
    assert binding.service_uuid == SERVICE_UUID.upper()
    assert binding.characteristic_uuid == CHARACTERISTIC_UUID


@pytest.mark.parametrize(
    "services",
    [
        [service(BATTERY_SERVICE, BATTERY_LEVEL)],
        [service(SERVICE_UUID, BATTERY_LEVEL)],
    ],
)
def test_degraded_binding(services):
    binding = bind_characteristic(services)
    assert binding.quality is BindQuality.DEGRADED
    assert binding.characteristic_uuid == BATTERY_LEVEL


@pytest.mark.parametrize("services", [[], [service(SERVICE_UUID)]])
def test_failed_binding(services):
    assert bind_characteristic(services).quality is BindQuality.FAILED


# ----------------------------------------------------------------------
# Scan → connect → monitor
# ----------------------------------------------------------------------
def test_name_substring_match_connects():
    radio = Radio([advert("Galaxy Buds", "AA:01", rssi=-40), advert("ESP32-DevKit-07", "24:0A:C4:00:00:07")])
    ble = radio.manager()

    outcome = run(ble.scan_and_connect())

    assert outcome.kind is OutcomeKind.CONNECTED
    assert ble.state is SessionState.MONITORING
    assert ble.is_connected
    assert ble.device_id == "24:0A:C4:00:00:07"
    assert radio.scanners[0].stopped
    assert outcome.binding.quality is BindQuality.EXACT


def test_notifications_reach_on_field_in_order():
    radio = Radio([advert("ESP32", "24:0A:C4:00:00:01")])
    ble = radio.manager()
    run(ble.scan_and_connect())

    client = radio.clients[0]
    for payload in (b"angle:12.5", b"END", b"garbage", b"azimuth:10", b'{"dist": 8.3}'):
        client.push(payload)

    assert [(f.key, f.value) for f in radio.fields] == [("elevation", 12.5), ("distance", 8.3)]


def test_degraded_connection_is_still_connected():
    radio = Radio([advert("ESP32", "AA:02")], services=[service(BATTERY_SERVICE, BATTERY_LEVEL)])
    outcome = run(radio.manager().scan_and_connect())
    assert outcome.kind is OutcomeKind.CONNECTED_DEGRADED
    assert outcome.ok


def test_no_compatible_service_is_rejected_and_torn_down():
    radio = Radio([advert("ESP32", "AA:03")], services=[])
    ble = radio.manager()

    outcome = run(ble.scan_and_connect())

    assert outcome.kind is OutcomeKind.NO_COMPATIBLE_SERVICE
    assert not ble.is_connected
    assert ble.state is SessionState.IDLE
    assert radio.clients[0].connected is False
    assert radio.link_lost == 0


def test_no_device_found_lists_devices_by_signal():
    radio = Radio([
        advert("Phone", "AA:10", rssi=-80),
        advert("Watch", "AA:11", rssi=-40),
        advert("TV", "AA:12", rssi=-60),
    ])
    ble = radio.manager()

    outcome = run(ble.scan_and_connect())

    assert outcome.kind is OutcomeKind.NO_DEVICE_FOUND
    assert [d.rssi for d in outcome.devices] == [-40, -60, -80]
    assert ble.strongest_device().address == "AA:11"
    assert radio.clients == []

    manual = run(ble.connect_device(ble.strongest_device()))
    assert manual.ok
    assert ble.device_id == "AA:11"


def test_permission_denied_blocks_the_scan():
    async def denied():
        return False

    radio = Radio([advert("ESP32", "AA:04")])
    outcome = run(radio.manager(permission_check=denied).scan_and_connect())
    assert outcome.kind is OutcomeKind.PERMISSION_DENIED
    assert radio.scanners == []


@pytest.mark.parametrize(
    "message, kind",
    [
        ("Bluetooth adapter is not powered", OutcomeKind.ADAPTER_OFF),
        ("org.bluez.Error.NotReady", OutcomeKind.ADAPTER_OFF),
        ("No Bluetooth adapters found.", OutcomeKind.BLE_UNAVAILABLE),
    ],
)
def test_scanner_initialisation_errors(message, kind):
    def broken_scanner(detection_callback=None):
        raise BleakError(message)

    ble = BleSessionManager(TelemetryDecoder(), on_field=print, scanner_factory=broken_scanner)
    outcome = run(ble.scan_and_connect())
    assert outcome.kind is kind
    assert ble.state is SessionState.IDLE


class FailingScanner(FakeScanner):
    error: BaseException = BleakError()

    async def start(self):
        raise self.error


@pytest.mark.parametrize(
    "error, kind",
    [
        (BleakError("No Bluetooth adapters found."), OutcomeKind.BLE_UNAVAILABLE),
        (FileNotFoundError(2, "No such file", "/run/dbus/system_bus_socket"), OutcomeKind.BLE_UNAVAILABLE),
        (BleakError("org.freedesktop.DBus.Error.ServiceUnknown"), OutcomeKind.BLE_UNAVAILABLE),
        (BleakError("Bluetooth device is turned off"), OutcomeKind.ADAPTER_OFF),
        (BleakError("org.bluez.Error.InProgress"), OutcomeKind.SCAN_ERROR),
    ],
)
def test_scanner_start_errors(error, kind):
    def scanner(detection_callback=None):
        failing = FailingScanner([], detection_callback)
        failing.error = error
        return failing

    ble = BleSessionManager(TelemetryDecoder(), on_field=print, scanner_factory=scanner)
    outcome = run(ble.scan_and_connect())
    assert outcome.kind is kind
    assert ble.state is SessionState.IDLE
    if kind is OutcomeKind.BLE_UNAVAILABLE:
        assert "Bluetooth is on" not in outcome.message


def test_connect_error_returns_to_idle():
    radio = Radio([advert("ESP32", "AA:05")], connect_error=BleakError("Device with address AA:05 was not found"))
    ble = radio.manager()
    outcome = run(ble.scan_and_connect())
    assert outcome.kind is OutcomeKind.CONNECT_ERROR
    assert ble.state is SessionState.IDLE
    assert "AA:05" not in outcome.message


def test_cancelled_notify_error_is_not_reported_as_failure():
    radio = Radio([advert("ESP32", "AA:06")], notify_error=BleakError("Operation was cancelled"))
    outcome = run(radio.manager().scan_and_connect())
    assert outcome.kind is OutcomeKind.CANCELLED


# ----------------------------------------------------------------------
# Single session
# ----------------------------------------------------------------------
def test_second_scan_asks_before_replacing_the_session():
    radio = Radio([advert("ESP32", "AA:07")])
    ble = radio.manager()

    async def scenario():
        first = await ble.scan_and_connect()
        again = await ble.scan_and_connect()
        confirmed = await ble.scan_and_connect(confirm_rescan=True)
        return first, again, confirmed

    first, again, confirmed = run(scenario())
    assert first.ok
    assert again.kind is OutcomeKind.ALREADY_CONNECTED
    assert confirmed.ok
    assert len(radio.clients) == 2
    assert radio.clients[0].connected is False
    assert radio.link_lost == 0


def test_concurrent_scan_is_busy():
    radio = Radio([advert("Nothing here", "AA:08")])
    ble = radio.manager(scan_timeout=0.2)

    async def scenario():
        first = asyncio.ensure_future(ble.scan_and_connect())
        await asyncio.sleep(0.01)
        second = await ble.scan_and_connect()
        ble.cancel_scan()
        return await first, second

    first, second = run(scenario())
    assert second.kind is OutcomeKind.BUSY
    assert first.kind is OutcomeKind.CANCELLED


# ----------------------------------------------------------------------
# Disconnect
# ----------------------------------------------------------------------
def test_user_disconnect_does_not_count_as_link_loss():
    radio = Radio([advert("ESP32", "AA:09")])
    ble = radio.manager()

    async def scenario():
        await ble.scan_and_connect()
        return await ble.disconnect()

    outcome = run(scenario())
    assert outcome.kind is OutcomeKind.DISCONNECTED
    assert ble.state is SessionState.IDLE
    assert not ble.is_connected
    assert radio.link_lost == 0


def test_unsolicited_link_loss_notifies():
    radio = Radio([advert("ESP32", "AA:0A")])
    ble = radio.manager()
    run(ble.scan_and_connect())

    radio.clients[0].drop_link()

    assert radio.link_lost == 1
    assert ble.state is SessionState.DISCONNECTED
    assert ble.device_id is None
    assert not ble.is_connected


def test_destroy_then_scan_again():
    radio = Radio([advert("ESP32", "AA:0B")])
    ble = radio.manager()

    async def scenario():
        await ble.scan_and_connect()
        await ble.destroy()
        return await ble.scan_and_connect()

    assert run(scenario()).ok
    assert len(radio.scanners) == 2
