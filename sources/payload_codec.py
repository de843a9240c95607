"""payload_codec.py

Decoding of the text telemetry the ESP32 pushes through its notify
characteristic.

Wire forms accepted per notification
-------------------------------------
* ``"<key>:<float>"``  – one reading, e.g. ``"angle:12.5"``
* a JSON object        – several readings at once, e.g. ``{"distance": 8.3}``
* ``"END"``            – end of a measurement burst, carries no data

bleak hands the payload over as ``bytearray``; mobile stacks hand it over
base64 encoded, so a ``str`` payload is base64-decoded first.

Typical usage
-------------
>>> decoder = TelemetryDecoder()
>>> decoder.decode(b"dist:8.3")
[TelemetryField(key='distance', value=8.3, kind=<FieldKind.DISTANCE: 'distance'>, source_key='dist')]
"""

import base64
import binascii
import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from app_logger import logger

END_MARKER = "END"

# Firmware revisions disagree on names; everything lands on two canonical keys.
KEY_ALIASES: Dict[str, str] = {
    "altitude": "elevation",
    "alt": "elevation",
    "angle": "elevation",
    "slopeDistance": "distance",
    "dist": "distance",
    "range": "distance",
}

# Heading always comes from the phone/host compass, never from the peripheral.
DISCARDED_KEYS = frozenset({"azimuth"})


class FieldKind(Enum):
    ELEVATION = "elevation"
    DISTANCE = "distance"
    EXTRA = "extra"          # any other key the firmware sends (mode, battery, ...)


@dataclass(frozen=True)
class TelemetryField:
    """One canonicalised reading."""
    key: str
    value: float
    kind: FieldKind
    source_key: str


class TelemetryDecoder:
    """
    Turns raw notification payloads into :class:`TelemetryField` lists.

    Malformed payloads never raise: they are logged and produce an empty
    list, so a noisy peripheral cannot break the session.
    """

    def __init__(self) -> None:
        self.bursts_completed = 0
        self.dropped = 0

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------
    @staticmethod
    def to_hex_string(byte_array: Union[bytes, bytearray]) -> str:
        """``b"\\x01\\xab"`` → ``"01:ab"`` (used when logging undecodable bytes)."""
        return ":".join(f"{c:02x}" for c in byte_array)

    @staticmethod
    def to_text(payload: Union[bytes, bytearray, str]) -> str:
        """
        Raw bytes are UTF-8 text already; a ``str`` is the base64 transport
        form and is decoded to bytes first.

        Raises
        ------
        ValueError
            If the payload is not valid base64 / UTF-8.
        """
        if isinstance(payload, str):
            try:
                raw = base64.b64decode(payload, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"invalid base64 payload: {exc}") from exc
        else:
            raw = bytes(payload)
        return raw.decode("utf-8")

    # ------------------------------------------------------------------
    # Field canonicalisation
    # ------------------------------------------------------------------
    @staticmethod
    def canonical_field(key: str, value: Any) -> Optional[TelemetryField]:
        """
        Map ``key`` through :data:`KEY_ALIASES` and coerce ``value``.

        Returns ``None`` for discarded keys and for values that are not finite
        numbers.
        """
        key = key.strip()
        if not key or key in DISCARDED_KEYS:
            return None
        if isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None

        canonical = KEY_ALIASES.get(key, key)
        if canonical == "elevation":
            kind = FieldKind.ELEVATION
        elif canonical == "distance":
            kind = FieldKind.DISTANCE
        else:
            kind = FieldKind.EXTRA
        return TelemetryField(key=canonical, value=number, kind=kind, source_key=key)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------
    def decode(self, payload: Union[bytes, bytearray, str]) -> List[TelemetryField]:
        try:
            text = self.to_text(payload).strip()
        except (ValueError, UnicodeDecodeError) as exc:
            self.dropped += 1
            raw = payload.encode() if isinstance(payload, str) else payload
            logger.warning("dropping undecodable payload %s (%s)", self.to_hex_string(raw), exc)
            return []

        parts = text.split(":")
        if len(parts) == 2:
            key, raw_value = parts[0].strip(), parts[1].strip()
            if key in DISCARDED_KEYS:
                logger.debug("ignoring peripheral %s=%s", key, raw_value)
                return []
            fld = self.canonical_field(key, raw_value)
            if fld is not None:
                return [fld]

        fields = self._decode_json(text)
        if fields is not None:
            return fields

        if text == END_MARKER:
            self.bursts_completed += 1
            logger.debug("end of burst #%d", self.bursts_completed)
            return []

        self.dropped += 1
        logger.warning("dropping unrecognised telemetry %r", text[:80])
        return []

    def _decode_json(self, text: str) -> Optional[List[TelemetryField]]:
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        fields: List[TelemetryField] = []
        for key, value in data.items():
            fld = self.canonical_field(str(key), value)
            if fld is not None:
                fields.append(fld)
        return fields
