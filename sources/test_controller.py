# test_controller.py
import asyncio
from types import SimpleNamespace

import pytest

from ble_session import BleSessionManager, OutcomeKind
from conftest import feed
from controller import SurveyController
from location import LocationTracker
from payload_codec import TelemetryDecoder


class FakeView:
    def __init__(self):
        self.on_command = None
        self.dashboards = []
        self.notices = []
        self.questions = []

    def update_dashboard(self, dashboard):
        self.dashboards.append(dashboard)

    def show_notice(self, notice):
        self.notices.append(notice)

    def ask(self, question, on_yes):
        self.questions.append((question, on_yes))


class QuietScanner:
    """Sees a single phone and never the sensor."""

    def __init__(self, detection_callback=None):
        self.callback = detection_callback

    async def start(self):
        device = SimpleNamespace(name="Phone", address="AA:20")
        self.callback(device, SimpleNamespace(local_name="Phone", service_uuids=[], rssi=-55))

    async def stop(self):
        pass


class Connectivity:
    def __init__(self, online):
        self.online = online

    async def check_internet(self):
        return self.online


@pytest.fixture
def controller(stack):
    ble = BleSessionManager(
        TelemetryDecoder(),
        on_field=stack.aggregator.apply,
        scanner_factory=QuietScanner,
        scan_timeout=0.05,
    )
    tracker = LocationTracker(None)
    tracker.latest = stack.location.latest
    return SurveyController(
        ble, stack.aggregator, stack.capture, stack.areas,
        Connectivity(online=False), tracker, stack.compass, FakeView(),
    )


def test_view_is_wired_to_the_controller(controller):
    assert controller.view.on_command == controller.handle_command
    assert controller.areas.notify == controller.notify
    assert controller.ble.on_link_lost == controller.handle_link_lost


def test_commands_from_the_view_thread_run_on_the_loop(controller):
    async def scenario():
        controller.attach_loop(asyncio.get_running_loop())
        await asyncio.to_thread(controller.handle_command, "toggle_point")
        await asyncio.to_thread(controller.handle_command, "no_such_command")
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert controller.capture.current_point == 2
    assert controller.view.dashboards[-1]["current_point"] == 2


def test_command_without_loop_is_an_error(controller):
    with pytest.raises(RuntimeError):
        controller.handle_command("toggle_point")


def test_live_readings_refresh_the_dashboard(controller):
    feed(controller.aggregator, b"angle:12.5")
    live = controller.view.dashboards[-1]["live"]
    assert live["elevation"] == 12.5
    assert live["azimuth"] == 90


def test_capture_reaches_the_view(controller):
    feed(controller.aggregator, b"distance:5.0")
    controller.capture_point(1)
    dashboard = controller.view.dashboards[-1]
    assert dashboard["loose_points"][1].distance == 5.0
    assert controller.view.notices[-1].title == "Point 1 saved"


def test_no_device_found_offers_the_strongest(controller):
    outcome = asyncio.run(controller.connect())
    assert outcome.kind is OutcomeKind.NO_DEVICE_FOUND
    question, _ = controller.view.questions[-1]
    assert "Phone" in question and "-55 dBm" in question
    assert controller.view.notices[-1].title == "No sensor found"


def test_link_loss_asks_to_reconnect(controller):
    feed(controller.aggregator, b"distance:5.0")
    controller.handle_link_lost()
    assert controller.aggregator.live.is_empty
    assert controller.view.notices[-1].title == "Connection lost"
    assert controller.view.questions[-1][0] == "Connection lost. Reconnect now?"


def test_submit_area_reports_progress_and_result(controller):
    area = controller.create_area("Slope A", "Somchai")
    for n, payload in ((1, b"distance:5.0"), (2, b"distance:9.0")):
        feed(controller.aggregator, b"angle:10", payload)
        controller.capture_point(n)
    assert controller.finish_survey() is True

    result = asyncio.run(controller.submit_area(area.id))

    assert result.ok
    titles = [n.title for n in controller.view.notices]
    assert titles[-2:] == ["Submitting", "Submitted"]
    assert controller.view.dashboards[-1]["areas"][0].is_submitted


def test_check_internet_updates_status(controller):
    assert asyncio.run(controller.check_internet()) is False
    assert controller.view.dashboards[-1]["online"] is False


def test_shutdown_without_session(controller):
    asyncio.run(controller.shutdown())
    assert controller.ble.device_id is None
