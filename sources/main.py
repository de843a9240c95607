#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""main.py
Executable that launches the landslide survey client: builds the component
stack, starts the compass / GPS watches and runs the curses console in a
background thread while the asyncio loop drives BLE and uploads.

Examples
--------
    python main.py --lat 17.625 --lon 100.099 --heading 90
    python main.py --gps-port /dev/ttyUSB0 --db field.db --log-level DEBUG
"""

import argparse
import asyncio
import curses
import threading
from typing import Optional

from app_logger import logger, set_level
from ble_session import BleSessionManager
from compass import CompassReconciler, StaticMagnetometer
from controller import SurveyController
from curses_view import CursesView
from location import (
    FixedLocationProvider,
    LocationProvider,
    LocationTracker,
    NmeaSerialProvider,
)
from payload_codec import TelemetryDecoder
from point_capture import PointCapture
from reading_aggregator import ReadingAggregator
from settings import (
    API_URL,
    APP_NAME,
    APP_VERSION,
    DB_FILE,
    GPS_SERIAL_BAUDRATE,
    REQUIRE_LOCATION_FOR_SCAN,
    SCAN_TIMEOUT_S,
)
from storage import KeyValueStore
from survey_areas import SurveyAreaManager
from survey_repository import SurveyRepository
from upload import UploadPipeline


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--db", default=DB_FILE, help="SQLite file for offline data")
    parser.add_argument("--endpoint", default=API_URL, help="upload endpoint")
    parser.add_argument("--scan-timeout", type=float, default=SCAN_TIMEOUT_S,
                        help="seconds to look for the sensor")
    parser.add_argument("--gps-port", help="serial port of an NMEA GNSS receiver")
    parser.add_argument("--gps-baud", type=int, default=GPS_SERIAL_BAUDRATE)
    parser.add_argument("--lat", type=float, help="fixed site latitude (no receiver)")
    parser.add_argument("--lon", type=float, help="fixed site longitude (no receiver)")
    parser.add_argument("--alt", type=float, help="fixed site altitude in metres")
    parser.add_argument("--heading", type=float,
                        help="fixed compass heading in degrees (bench use)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="level shown in the console log view")
    return parser.parse_args(argv)


def location_provider(args: argparse.Namespace) -> Optional[LocationProvider]:
    if args.gps_port:
        return NmeaSerialProvider(args.gps_port, args.gps_baud)
    if args.lat is not None and args.lon is not None:
        return FixedLocationProvider(args.lat, args.lon, args.alt)
    return None


def build_components(stdscr: "curses.window", args: argparse.Namespace) -> SurveyController:
    """
    Build the whole stack and return the controller that glues it together.
    """
    # 1️⃣  Persistence layer
    store = KeyValueStore(db_path=args.db)
    repo = SurveyRepository(store)

    # 2️⃣  Sensors
    compass = CompassReconciler()
    provider = location_provider(args)
    location = LocationTracker(provider)
    aggregator = ReadingAggregator(compass, location)

    # 3️⃣  Survey + upload
    uploader = UploadPipeline(url=args.endpoint)
    areas = SurveyAreaManager(repo, location, compass, uploader=uploader)

    # 4️⃣  BLE – Android semantics: no scan without location permission
    # (a host without any location source has nothing to deny)
    ble_options = {}
    if REQUIRE_LOCATION_FOR_SCAN and provider is not None:
        ble_options["permission_check"] = location.ensure_permission
    ble = BleSessionManager(
        TelemetryDecoder(),
        on_field=aggregator.apply,
        scan_timeout=args.scan_timeout,
        **ble_options,
    )
    capture = PointCapture(aggregator, areas, repo, device_id=lambda: ble.device_id)

    # 5️⃣  UI layer (curses) + controller
    view = CursesView(stdscr)
    return SurveyController(ble, aggregator, capture, areas, uploader, location, compass, view)


async def run(stdscr: "curses.window", args: argparse.Namespace) -> None:
    controller = build_components(stdscr, args)
    controller.attach_loop(asyncio.get_running_loop())

    controller.areas.load()
    source = StaticMagnetometer.pointing_at(args.heading) if args.heading is not None else None
    controller.compass.start(source)
    await controller.location.start()
    controller.refresh_view()
    controller.handle_command("check_internet")

    # curses blocks, so the UI loop gets its own thread
    ui_thread = threading.Thread(target=controller.view.run, daemon=True)
    ui_thread.start()
    logger.info("%s %s started", APP_NAME, APP_VERSION)

    try:
        while ui_thread.is_alive():
            await asyncio.sleep(0.1)
    finally:
        controller.view.stop()
        await controller.shutdown()
        controller.areas.repository.store.close()


def main(stdscr: "curses.window", args: argparse.Namespace) -> None:
    try:
        asyncio.run(run(stdscr, args))
    except KeyboardInterrupt:
        logger.info("terminated by user")


def cli() -> None:
    cli_args = parse_args()
    set_level(cli_args.log_level)
    # ``curses.wrapper`` takes care of terminal init / teardown.
    curses.wrapper(main, cli_args)


# ----------------------------------------------------------------------
# Main entry point
# ----------------------------------------------------------------------
if __name__ == "__main__":
    cli()
