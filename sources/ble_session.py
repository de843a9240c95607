#!/usr/bin/env python3
"""ble_session.py
BLE session manager for the ESP32 landslide sensor, built on bleak.

Owns the whole life of one peripheral link::

    Idle → Scanning → Connecting → Bound → Monitoring → (Disconnected | Error) → Idle

Scanning is unfiltered (some firmware does not advertise its service UUID);
the first advertisement that looks like our sensor wins.  After connecting,
the GATT service and characteristic are resolved by ordered lists of
resolvers: exact candidates first, then "first available" as a degraded
binding.  Notifications are decoded by :class:`TelemetryDecoder` and every
field is handed to ``on_field`` one by one.

Every public coroutine returns a :class:`BleOutcome`; bleak exceptions are
translated here and never leave this module.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from bleak import AdvertisementData, BleakClient, BleakScanner, BLEDevice
from bleak.exc import BleakError

from app_logger import logger
from models import Notice, Severity
from payload_codec import TelemetryDecoder, TelemetryField
from settings import (
    CANDIDATE_DEVICE_NAMES,
    CANDIDATE_SERVICE_UUIDS,
    CHARACTERISTIC_UUID,
    DEVICE_NAME_HINTS,
    SCAN_TIMEOUT_S,
)

# Substrings of platform errors that mean "radio present but switched off"
_ADAPTER_OFF_HINTS = ("turnedoff", "poweredoff", "notpowered", "notready")
# ... and "no usable BLE stack"; bleak on Linux reports these from start()
_STACK_MISSING_HINTS = ("nobluetoothadapters", "dbus", "system_bus_socket")

_UNAVAILABLE_TEXT = (
    "Bluetooth Low Energy is not available on this system. "
    "Check the Bluetooth adapter and its driver, then restart the app."
)


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    BOUND = "bound"
    MONITORING = "monitoring"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class OutcomeKind(Enum):
    CONNECTED = "connected"
    CONNECTED_DEGRADED = "connected_degraded"
    ALREADY_CONNECTED = "already_connected"
    BUSY = "busy"
    PERMISSION_DENIED = "permission_denied"
    BLE_UNAVAILABLE = "ble_unavailable"
    ADAPTER_OFF = "adapter_off"
    NO_DEVICE_FOUND = "no_device_found"
    SCAN_ERROR = "scan_error"
    CONNECT_ERROR = "connect_error"
    NO_COMPATIBLE_SERVICE = "no_compatible_service"
    CANCELLED = "cancelled"
    DISCONNECTED = "disconnected"


_OUTCOME_TEXT = {
    OutcomeKind.CONNECTED: ("Connected", Severity.SUCCESS),
    OutcomeKind.CONNECTED_DEGRADED: ("Connected (fallback channel)", Severity.INFO),
    OutcomeKind.ALREADY_CONNECTED: ("Already connected", Severity.INFO),
    OutcomeKind.BUSY: ("Busy", Severity.INFO),
    OutcomeKind.PERMISSION_DENIED: ("Permission needed", Severity.WARNING),
    OutcomeKind.BLE_UNAVAILABLE: ("Bluetooth unavailable", Severity.ERROR),
    OutcomeKind.ADAPTER_OFF: ("Bluetooth is off", Severity.WARNING),
    OutcomeKind.NO_DEVICE_FOUND: ("No sensor found", Severity.WARNING),
    OutcomeKind.SCAN_ERROR: ("Scan error", Severity.ERROR),
    OutcomeKind.CONNECT_ERROR: ("Connect error", Severity.ERROR),
    OutcomeKind.NO_COMPATIBLE_SERVICE: ("No compatible service", Severity.ERROR),
    OutcomeKind.CANCELLED: ("Scan cancelled", Severity.INFO),
    OutcomeKind.DISCONNECTED: ("Disconnected", Severity.INFO),
}


# ----------------------------------------------------------------------
# Scan results
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ScannedDevice:
    device: BLEDevice
    name: Optional[str]
    address: str
    rssi: int
    service_uuids: Tuple[str, ...] = ()


def is_candidate(name: Optional[str], service_uuids: Sequence[str]) -> bool:
    """Advertised service, known name, or a name hint; any one is enough."""
    advertised = {u.lower() for u in service_uuids or ()}
    if advertised & {u.lower() for u in CANDIDATE_SERVICE_UUIDS}:
        return True
    if not name:
        return False
    lowered = name.lower()
    if lowered in {n.lower() for n in CANDIDATE_DEVICE_NAMES}:
        return True
    return any(hint in lowered for hint in DEVICE_NAME_HINTS)


# ----------------------------------------------------------------------
# GATT binding
# ----------------------------------------------------------------------
class BindQuality(Enum):
    EXACT = "exact"
    DEGRADED = "degraded"
    FAILED = "failed"


Resolver = Callable[[Sequence[Any]], Optional[Any]]


def by_uuid(uuid: str) -> Resolver:
    wanted = uuid.lower()

    def resolve(items: Sequence[Any]) -> Optional[Any]:
        return next((i for i in items if str(i.uuid).lower() == wanted), None)
    return resolve


def first_available(items: Sequence[Any]) -> Optional[Any]:
    return items[0] if items else None


SERVICE_RESOLVERS: List[Tuple[Resolver, BindQuality]] = [
    (by_uuid(u), BindQuality.EXACT) for u in CANDIDATE_SERVICE_UUIDS
] + [(first_available, BindQuality.DEGRADED)]

CHARACTERISTIC_RESOLVERS: List[Tuple[Resolver, BindQuality]] = [
    (by_uuid(CHARACTERISTIC_UUID), BindQuality.EXACT),
    (first_available, BindQuality.DEGRADED),
]


def resolve_first(
    resolvers: Sequence[Tuple[Resolver, BindQuality]], items: Sequence[Any]
) -> Tuple[Optional[Any], BindQuality]:
    for resolver, quality in resolvers:
        found = resolver(items)
        if found is not None:
            return found, quality
    return None, BindQuality.FAILED


@dataclass(frozen=True)
class BindOutcome:
    quality: BindQuality
    service: Any = None
    characteristic: Any = None
    reason: str = ""

    @property
    def service_uuid(self) -> Optional[str]:
        return str(self.service.uuid) if self.service is not None else None

    @property
    def characteristic_uuid(self) -> Optional[str]:
        return str(self.characteristic.uuid) if self.characteristic is not None else None


def bind_characteristic(services: Sequence[Any]) -> BindOutcome:
    """
    Resolve service, then characteristic.  The result is DEGRADED when either
    step had to fall back to "first available".
    """
    service, service_quality = resolve_first(SERVICE_RESOLVERS, list(services))
    if service is None:
        return BindOutcome(BindQuality.FAILED, reason="the device exposes no GATT services")

    characteristic, char_quality = resolve_first(CHARACTERISTIC_RESOLVERS, list(service.characteristics))
    if characteristic is None:
        return BindOutcome(
            BindQuality.FAILED, service=service,
            reason=f"service {service.uuid} has no characteristics",
        )

    degraded = BindQuality.DEGRADED in (service_quality, char_quality)
    return BindOutcome(
        BindQuality.DEGRADED if degraded else BindQuality.EXACT,
        service=service,
        characteristic=characteristic,
    )


# ----------------------------------------------------------------------
# Outcome
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class BleOutcome:
    kind: OutcomeKind
    message: str
    device: Optional[BLEDevice] = None
    binding: Optional[BindOutcome] = None
    devices: Tuple[ScannedDevice, ...] = ()

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.CONNECTED, OutcomeKind.CONNECTED_DEGRADED)

    def to_notice(self) -> Notice:
        title, severity = _OUTCOME_TEXT[self.kind]
        return Notice(title, self.message, severity)


async def _always_granted() -> bool:
    return True


def _adapter_off(exc: BaseException) -> bool:
    text = str(exc).lower().replace(" ", "")
    return any(hint in text for hint in _ADAPTER_OFF_HINTS)


def _stack_missing(exc: BaseException) -> bool:
    if isinstance(exc, OSError):
        return True
    text = str(exc).lower().replace(" ", "").replace("-", "")
    return any(hint in text for hint in _STACK_MISSING_HINTS)


class BleSessionManager:
    """
    Parameters
    ----------
    decoder : TelemetryDecoder
        Turns notification payloads into fields.
    on_field : callable
        Called once per decoded field, in arrival order.
    on_link_lost : callable, optional
        Called after an unsolicited disconnect (not after :meth:`disconnect`).
    permission_check : coroutine function, optional
        Platform permission gate run before every scan.
    scanner_factory, client_factory :
        ``BleakScanner`` / ``BleakClient`` or stand-ins with the same shape.
    """

    def __init__(
        self,
        decoder: TelemetryDecoder,
        on_field: Callable[[TelemetryField], None],
        on_link_lost: Optional[Callable[[], None]] = None,
        permission_check: Callable[[], Awaitable[bool]] = _always_granted,
        scanner_factory: Callable[..., Any] = BleakScanner,
        client_factory: Callable[..., Any] = BleakClient,
        scan_timeout: float = SCAN_TIMEOUT_S,
    ):
        self.decoder = decoder
        self.on_field = on_field
        self.on_link_lost = on_link_lost
        self.permission_check = permission_check
        self.scanner_factory = scanner_factory
        self.client_factory = client_factory
        self.scan_timeout = scan_timeout

        self.state = SessionState.IDLE
        self.device: Optional[BLEDevice] = None
        self.client: Any = None
        self.binding: Optional[BindOutcome] = None

        self._seen: Dict[str, ScannedDevice] = {}
        self._match: Optional[ScannedDevice] = None
        self._match_event: Optional[asyncio.Event] = None
        self._scan_cancelled = False
        self._busy = False
        self._closing = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.state in (SessionState.BOUND, SessionState.MONITORING)

    @property
    def device_id(self) -> Optional[str]:
        return self.device.address if self.device is not None else None

    @property
    def scanned_devices(self) -> List[ScannedDevice]:
        """Distinct devices from the last scan, strongest signal first."""
        return sorted(self._seen.values(), key=lambda d: d.rssi, reverse=True)

    def strongest_device(self) -> Optional[ScannedDevice]:
        devices = self.scanned_devices
        return devices[0] if devices else None

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("BLE state %s → %s", self.state.value, state.value)
            self.state = state

    def _fail(self, kind: OutcomeKind, message: str, **extra: Any) -> BleOutcome:
        self._set_state(SessionState.ERROR)
        logger.error("BLE %s: %s", kind.value, message)
        self._set_state(SessionState.IDLE)
        return BleOutcome(kind, message, **extra)

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    async def scan_and_connect(self, confirm_rescan: bool = False) -> BleOutcome:
        """
        Scan until the first plausible sensor shows up, then connect to it.

        When a session already exists the caller gets ``ALREADY_CONNECTED``
        unless ``confirm_rescan`` is set, in which case the current link is
        dropped first.
        """
        if self._busy:
            return BleOutcome(OutcomeKind.BUSY, "A scan or connection is already in progress. Please wait.")
        if self.is_connected:
            if not confirm_rescan:
                return BleOutcome(
                    OutcomeKind.ALREADY_CONNECTED,
                    "A sensor is already connected. Disconnect it and scan again?",
                    device=self.device,
                    binding=self.binding,
                )
            await self.disconnect()

        self._busy = True
        try:
            if not await self.permission_check():
                return BleOutcome(
                    OutcomeKind.PERMISSION_DENIED,
                    "Bluetooth scanning needs Bluetooth and location permission. "
                    "Grant both and try again.",
                )
            found = await self._scan()
            if not isinstance(found, ScannedDevice):
                return found
            return await self._connect(found.device)
        finally:
            self._busy = False

    async def _scan(self):
        self._seen = {}
        self._match = None
        self._scan_cancelled = False
        self._match_event = asyncio.Event()

        try:
            scanner = self.scanner_factory(detection_callback=self._on_detection)
        except (BleakError, OSError) as exc:
            if _adapter_off(exc):
                return self._fail(OutcomeKind.ADAPTER_OFF, "Bluetooth is turned off. Switch it on and scan again.")
            return self._fail(OutcomeKind.BLE_UNAVAILABLE, _UNAVAILABLE_TEXT)

        self._set_state(SessionState.SCANNING)
        logger.info("scanning for the landslide sensor (%.0f s)…", self.scan_timeout)
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            if _adapter_off(exc):
                return self._fail(OutcomeKind.ADAPTER_OFF, "Bluetooth is turned off. Switch it on and scan again.")
            if _stack_missing(exc):
                return self._fail(OutcomeKind.BLE_UNAVAILABLE, _UNAVAILABLE_TEXT)
            return self._fail(OutcomeKind.SCAN_ERROR, "Scanning failed. Make sure Bluetooth is on and try again.")

        try:
            await asyncio.wait_for(self._match_event.wait(), timeout=self.scan_timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            try:
                await scanner.stop()
            except BleakError as exc:
                logger.warning("stopping scanner: %s", exc)

        if self._scan_cancelled:
            self._set_state(SessionState.IDLE)
            return BleOutcome(OutcomeKind.CANCELLED, "Scan cancelled.")
        if self._match is None:
            self._set_state(SessionState.IDLE)
            devices = tuple(self.scanned_devices)
            logger.info("no sensor found (%d other device(s) seen)", len(devices))
            return BleOutcome(
                OutcomeKind.NO_DEVICE_FOUND,
                "No landslide sensor found. Make sure it is powered on and nearby, "
                "or pick it from the device list.",
                devices=devices,
            )
        logger.info("sensor found: %s (%s, %d dBm)", self._match.name, self._match.address, self._match.rssi)
        return self._match

    def _on_detection(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        """Detection callback for ``BleakScanner``."""
        name = advertisement_data.local_name or device.name
        uuids = tuple(advertisement_data.service_uuids or ())
        self._seen[device.address] = ScannedDevice(
            device=device,
            name=name,
            address=device.address,
            rssi=advertisement_data.rssi,
            service_uuids=uuids,
        )
        if self._match is None and is_candidate(name, uuids):
            self._match = self._seen[device.address]
            if self._match_event is not None:
                self._match_event.set()

    def cancel_scan(self) -> None:
        if self.state is SessionState.SCANNING and self._match_event is not None:
            self._scan_cancelled = True
            self._match_event.set()

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    async def connect_device(self, device: Any) -> BleOutcome:
        """Manual selection path: connect to a device picked from the scan list."""
        if isinstance(device, ScannedDevice):
            device = device.device
        if self._busy:
            return BleOutcome(OutcomeKind.BUSY, "A scan or connection is already in progress. Please wait.")
        if self.is_connected:
            return BleOutcome(
                OutcomeKind.ALREADY_CONNECTED,
                "A sensor is already connected. Disconnect it first.",
                device=self.device,
                binding=self.binding,
            )
        self._busy = True
        try:
            return await self._connect(device)
        finally:
            self._busy = False

    async def _connect(self, device: BLEDevice) -> BleOutcome:
        self._set_state(SessionState.CONNECTING)
        self._closing = False
        client = self.client_factory(device, disconnected_callback=self._on_disconnected)

        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("connect(%s) raised %r", device.address, exc)
            return self._fail(
                OutcomeKind.CONNECT_ERROR,
                "Could not connect to the sensor. Move closer, check it is powered, and try again.",
            )

        # bleak discovers services as part of connect()
        try:
            services = list(client.services)
        except BleakError as exc:
            logger.debug("service discovery on %s raised %r", device.address, exc)
            await self._teardown(client)
            return self._fail(
                OutcomeKind.CONNECT_ERROR,
                "Connected, but reading the sensor's services failed. Try connecting again.",
            )
        logger.info("connected to %s, MTU %s, %d service(s)", device.address, client.mtu_size, len(services))

        binding = bind_characteristic(services)
        if binding.quality is BindQuality.FAILED:
            await self._teardown(client)
            return self._fail(
                OutcomeKind.NO_COMPATIBLE_SERVICE,
                "This device does not offer a compatible sensor service. "
                "Check that the landslide firmware is installed.",
                binding=binding,
            )

        self.client, self.device, self.binding = client, device, binding
        self._set_state(SessionState.BOUND)
        if binding.quality is BindQuality.DEGRADED:
            logger.warning(
                "degraded binding: service %s / characteristic %s",
                binding.service_uuid, binding.characteristic_uuid,
            )
        else:
            logger.info("bound to %s / %s", binding.service_uuid, binding.characteristic_uuid)

        try:
            await client.start_notify(binding.characteristic, self._on_notify)
        except BleakError as exc:
            self._clear_session()
            await self._teardown(client)
            if self._is_cancel_noise(exc):
                self._set_state(SessionState.IDLE)
                return BleOutcome(OutcomeKind.CANCELLED, "Connection cancelled.")
            return self._fail(
                OutcomeKind.CONNECT_ERROR,
                "Connected, but the sensor refused notifications. Try connecting again.",
            )

        self._set_state(SessionState.MONITORING)
        name = getattr(device, "name", None) or device.address
        if binding.quality is BindQuality.DEGRADED:
            return BleOutcome(
                OutcomeKind.CONNECTED_DEGRADED,
                f"Connected to {name} using a fallback channel. Readings should still arrive.",
                device=device,
                binding=binding,
            )
        return BleOutcome(OutcomeKind.CONNECTED, f"Connected to {name}.", device=device, binding=binding)

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------
    def _on_notify(self, sender: Any, data: bytearray) -> None:
        for fld in self.decoder.decode(data):
            self.on_field(fld)

    @staticmethod
    def _is_cancel_noise(exc: BaseException) -> bool:
        if "cancel" in str(exc).lower():
            logger.debug("ignoring monitor error during teardown: %s", exc)
            return True
        return False

    def _on_disconnected(self, client: Any) -> None:
        if self._closing or client is not self.client:
            return
        logger.warning("link to %s lost", self.device_id)
        self._clear_session()
        self._set_state(SessionState.DISCONNECTED)
        if self.on_link_lost is not None:
            self.on_link_lost()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _clear_session(self) -> None:
        self.client = None
        self.device = None
        self.binding = None

    async def _teardown(self, client: Any) -> None:
        self._closing = True
        try:
            await client.disconnect()
        except BleakError as exc:
            logger.warning("disconnect: %s", exc)

    async def disconnect(self) -> BleOutcome:
        client, binding = self.client, self.binding
        if client is None:
            self._set_state(SessionState.IDLE)
            return BleOutcome(OutcomeKind.DISCONNECTED, "No sensor is connected.")

        address = self.device_id
        self._closing = True
        if binding is not None and binding.characteristic is not None:
            try:
                await client.stop_notify(binding.characteristic)
            except BleakError as exc:
                if not self._is_cancel_noise(exc):
                    logger.warning("stop_notify: %s", exc)
        await self._teardown(client)
        self._clear_session()
        self._set_state(SessionState.DISCONNECTED)
        logger.info("disconnected from %s", address)
        self._set_state(SessionState.IDLE)
        return BleOutcome(OutcomeKind.DISCONNECTED, "Sensor disconnected. Scan again to reconnect.")

    async def destroy(self) -> None:
        """Stop everything; the next scan starts from scratch."""
        self.cancel_scan()
        await self.disconnect()
        self._seen = {}
