# controller.py
"""
Survey controller: the one object the console talks to.

It owns no sensor or survey state itself; it composes the BLE session, the
reading aggregator, point capture and the area manager, exposes a narrow set
of operations, and pushes a fresh dashboard to the view after each of them.

The view runs in its own thread.  Its commands arrive through
:meth:`handle_command` and are re-scheduled onto the event loop, so every
component is only ever touched from the loop thread.
"""

import asyncio
import inspect
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from app_logger import logger
from ble_session import BleOutcome, BleSessionManager, OutcomeKind
from compass import CompassReconciler
from curses_view import CursesView
from location import LocationTracker
from models import ImageRef, Notice, Severity
from point_capture import PointCapture
from reading_aggregator import ReadingAggregator
from survey_areas import SurveyAreaManager
from upload import UploadPipeline, UploadResult


class SurveyController:
    def __init__(
        self,
        ble: BleSessionManager,
        aggregator: ReadingAggregator,
        capture: PointCapture,
        areas: SurveyAreaManager,
        uploader: UploadPipeline,
        location: LocationTracker,
        compass: CompassReconciler,
        view: CursesView,
    ):
        self.ble = ble
        self.aggregator = aggregator
        self.capture = capture
        self.areas = areas
        self.uploader = uploader
        self.location = location
        self.compass = compass
        self.view = view
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.online: Optional[bool] = None

        # everything user-facing goes through the view
        self.areas.notify = self.notify
        self.ble.on_link_lost = self.handle_link_lost
        self.aggregator.subscribe(lambda _reading: self.refresh_view())
        self.compass.subscribe(lambda _reading: self.refresh_view())
        self.location.subscribe(lambda _fix: self.refresh_view())

        # controller registers to be notified by the view
        self.view.on_command = self.handle_command

        self._commands: Dict[str, Callable[..., Any]] = {
            "connect": self.connect,
            "connect_strongest": self.connect_strongest,
            "cancel_scan": self.cancel_scan,
            "disconnect": self.disconnect,
            "toggle_point": self.toggle_point,
            "capture": self.capture_point,
            "attach_image": self.attach_image,
            "create_area": self.create_area,
            "finish_survey": self.finish_survey,
            "save_points_as_area": self.save_points_as_area,
            "submit_area": self.submit_area,
            "submit_loose": self.submit_loose,
            "delete_area": self.delete_area,
            "clear_areas": self.clear_areas,
            "check_internet": self.check_internet,
        }

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def handle_command(self, name: str, *args: Any) -> None:
        """Called from the view thread."""
        func = self._commands.get(name)
        if func is None:
            logger.warning("unknown command %r", name)
            return
        if self.loop is None:
            raise RuntimeError("controller has no event loop attached")
        if inspect.iscoroutinefunction(func):
            future = asyncio.run_coroutine_threadsafe(func(*args), self.loop)
            future.add_done_callback(self._log_failure)
        else:
            self.loop.call_soon_threadsafe(func, *args)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("command failed: %r", exc, exc_info=exc)

    def notify(self, notice: Notice) -> None:
        logger.info("[%s] %s: %s", notice.severity.value, notice.title, notice.message)
        self.view.show_notice(notice)

    def refresh_view(self) -> None:
        ble = self.ble
        self.view.update_dashboard({
            "ble_state": ble.state.value,
            "device": ble.device_id,
            "binding": ble.binding.quality.value if ble.binding else None,
            "live": self.aggregator.live.as_dict(),
            "heading": self.compass.latest.heading,
            "direction": self.compass.latest.direction,
            "fix": self.location.latest,
            "gps_denied": self.location.permission_granted is False,
            "current_point": self.capture.current_point,
            "loose_points": dict(self.areas.loose.points),
            "loose_images": dict(self.areas.loose.images),
            "active_area": self.areas.active_area,
            "areas": list(self.areas.areas),
            "online": self.online,
        })

    def _report(self, outcome: BleOutcome) -> BleOutcome:
        self.notify(outcome.to_notice())
        self.refresh_view()
        return outcome

    # ------------------------------------------------------------------
    # BLE
    # ------------------------------------------------------------------
    async def connect(self, confirm_rescan: bool = False) -> BleOutcome:
        self.refresh_view()
        outcome = await self.ble.scan_and_connect(confirm_rescan=confirm_rescan)
        if outcome.kind is OutcomeKind.ALREADY_CONNECTED:
            self.view.ask(
                "Already connected. Disconnect and scan again?",
                lambda: self.handle_command("connect", True),
            )
            self.refresh_view()
            return outcome
        if outcome.kind is OutcomeKind.NO_DEVICE_FOUND and outcome.devices:
            strongest = outcome.devices[0]
            self.view.ask(
                f"Try the strongest device seen, {strongest.name or strongest.address} "
                f"({strongest.rssi} dBm)?",
                lambda: self.handle_command("connect_strongest"),
            )
        return self._report(outcome)

    async def connect_strongest(self) -> BleOutcome:
        device = self.ble.strongest_device()
        if device is None:
            return self._report(BleOutcome(
                OutcomeKind.NO_DEVICE_FOUND, "No devices have been seen yet. Scan first.",
            ))
        return self._report(await self.ble.connect_device(device))

    def cancel_scan(self) -> None:
        self.ble.cancel_scan()

    async def disconnect(self) -> BleOutcome:
        outcome = await self.ble.disconnect()
        self.aggregator.clear()
        return self._report(outcome)

    def handle_link_lost(self) -> None:
        self.aggregator.clear()
        self.notify(Notice(
            "Connection lost",
            "The sensor went out of range or was switched off.",
            Severity.WARNING,
        ))
        self.view.ask("Connection lost. Reconnect now?", lambda: self.handle_command("connect"))
        self.refresh_view()

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------
    def toggle_point(self) -> int:
        n = self.capture.toggle_point()
        self.refresh_view()
        return n

    def capture_point(self, point_number: Optional[int] = None):
        point = self.capture.capture_current_point(point_number)
        self.refresh_view()
        return point

    def attach_image(self, point_number: int, uri: str) -> ImageRef:
        image = self.capture.attach_image(point_number, ImageRef(uri=uri))
        self.notify(Notice(
            f"Photo added to point {point_number}",
            "The photo will be compressed when the area is submitted.",
            Severity.SUCCESS,
        ))
        self.refresh_view()
        return image

    # ------------------------------------------------------------------
    # Areas
    # ------------------------------------------------------------------
    def create_area(self, name: str, observer: str):
        area = self.areas.create_area(name, observer)
        self.refresh_view()
        return area

    def finish_survey(self) -> bool:
        done = self.areas.finish_current_survey()
        self.refresh_view()
        return done

    def save_points_as_area(self, name: str, observer: str):
        area = self.areas.save_points_as_new_area(name, observer)
        self.refresh_view()
        return area

    def delete_area(self, area_id: str) -> bool:
        removed = self.areas.delete_area(area_id)
        if removed:
            self.notify(Notice("Area deleted", "The survey area was removed from this device.", Severity.SUCCESS))
        self.refresh_view()
        return removed

    def clear_areas(self) -> int:
        count = self.areas.clear_all_areas()
        self.refresh_view()
        return count

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    async def submit_area(self, area_id: str) -> UploadResult:
        self.notify(Notice("Submitting", "Checking the connection and sending the area…"))
        result = await self.areas.submit_area(area_id)
        self.refresh_view()
        return result

    async def submit_loose(self, clear_after: bool = False) -> UploadResult:
        self.notify(Notice("Submitting", "Checking the connection and sending both points…"))
        result = await self.areas.submit_loose_points(clear_after=clear_after)
        self.refresh_view()
        return result

    async def check_internet(self) -> bool:
        self.online = await self.uploader.check_internet()
        self.refresh_view()
        return self.online

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def shutdown(self) -> None:
        await self.ble.destroy()
        await self.compass.stop()
        self.location.stop()
        logger.info("survey client stopped")
